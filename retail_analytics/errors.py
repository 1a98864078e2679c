"""Error types and the JSON failure envelope shared by every blueprint."""

import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class AnalyticsError(Exception):
    status_code = 500

    def __init__(self, message, details=None, status_code=None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        payload = {'success': False, 'error': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class InvalidRequest(AnalyticsError):
    status_code = 400


class RecordNotFound(AnalyticsError):
    status_code = 404


class UploadFailed(AnalyticsError):
    """Raised when a chunk keeps failing after every retry.

    ``report`` holds the counts reached before the failure so callers can
    surface the partial result.
    """

    status_code = 500

    def __init__(self, message, report, details=None):
        super().__init__(message, details=details)
        self.report = report

    def to_dict(self):
        payload = super().to_dict()
        payload.update(self.report)
        return payload


def error_response(message, status_code=400, details=None):
    payload = {'success': False, 'error': message}
    if details:
        payload['details'] = details
    return jsonify(payload), status_code


def register_error_handlers(app):
    @app.errorhandler(AnalyticsError)
    def handle_analytics_error(error):
        if error.status_code >= 500:
            logger.error("%s: %s", error.message, error.details or '')
        else:
            logger.info("Rejected request: %s", error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return error_response(error.name, error.code or 500, error.description)

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        logger.exception("Unexpected error while handling request")
        return error_response('Internal server error', 500, str(error))
