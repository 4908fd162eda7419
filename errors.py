class ValidationError(ValueError):
    pass


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class SecurityError(ValueError):
    pass


class AccessDeniedError(SecurityError):
    pass
