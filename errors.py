"""Error taxonomy shared by every route; each class maps to one HTTP status."""


class ApiError(Exception):
    status_code = 500
    default_message = 'Internal server error'

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        return {'success': False, 'error': self.message}


class ValidationError(ApiError):
    status_code = 400
    default_message = 'Invalid request'


class AuthenticationError(ApiError):
    status_code = 401
    default_message = 'Authentication required'


class AuthorizationError(ApiError):
    status_code = 403
    default_message = 'Access denied'


class NotFoundError(ApiError):
    status_code = 404
    default_message = 'Not found'


class ConflictError(ApiError):
    status_code = 409
    default_message = 'Resource already exists'


class InternalError(ApiError):
    status_code = 500
    default_message = 'Internal server error'

    def to_dict(self):
        # Detail stays in the server log.
        return {'success': False, 'error': self.default_message}
