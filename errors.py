# =================================================================
#   Online Teaching ERP - Error Taxonomy
#   Domain modules raise these; server.py renders them as
#   {error, message, details?} with the matching HTTP status.
# =================================================================


class AppError(Exception):
    """Base class for every error that maps onto an HTTP response."""
    status_code = 500
    error = 'internal_error'

    def __init__(self, message, details=None, error=None):
        super().__init__(message)
        self.message = message
        self.details = details
        if error:
            self.error = error

    def to_dict(self):
        payload = {'error': self.error, 'message': self.message}
        if self.details:
            payload['details'] = list(self.details)
        return payload


class ValidationError(AppError):
    status_code = 400
    error = 'validation_failed'


class Unauthorized(AppError):
    status_code = 401
    error = 'unauthorized'


class Forbidden(AppError):
    status_code = 403
    error = 'forbidden'


class NotFound(AppError):
    status_code = 404
    error = 'not_found'


class BusinessRuleError(AppError):
    """Request was well formed but breaks a business rule (surfaced as 400)."""
    status_code = 400
    error = 'business_rule'


class AlreadyExists(BusinessRuleError):
    error = 'already_exists'


class InvalidState(BusinessRuleError):
    error = 'session_not_live'


class InvalidCode(BusinessRuleError):
    error = 'invalid_attendance_code'


class WindowClosed(BusinessRuleError):
    error = 'session_not_available'


class AlreadyEnrolled(BusinessRuleError):
    error = 'already_enrolled'


class CourseFull(BusinessRuleError):
    error = 'course_full'
