"""Custom exceptions for the storefront application.

Every error carries a stable ``code`` from the storefront taxonomy so
clients can branch on it without parsing messages.
"""


class StorefrontError(Exception):
    """Base exception for all application errors."""
    code = 'INTERNAL'

    def __init__(self, message="An internal error occurred", status_code=500, payload=None, code=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload
        if code:
            self.code = code

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['code'] = self.code
        rv['status'] = 'error'
        return rv


class ValidationError(StorefrontError):
    """Bad input shape or a violated business rule on input."""
    code = 'VALIDATION'

    def __init__(self, message, payload=None):
        super().__init__(message, 400, payload)


class NotFoundError(StorefrontError):
    """Exception raised when a resource is not found."""
    code = 'NOT_FOUND'

    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)


class InsufficientStockError(StorefrontError):
    """Raised when fewer units are available than requested."""
    code = 'INSUFFICIENT_STOCK'

    def __init__(self, product_name, required, available, payload=None):
        message = f"Insufficient stock for {product_name}: requested {required}, available {available}"
        payload = dict(payload or ())
        payload.setdefault('requested', required)
        payload.setdefault('available', available)
        super().__init__(message, 400, payload)
        self.required = required
        self.available = available


class InvalidStateError(StorefrontError):
    """A state transition precondition failed."""
    code = 'INVALID_STATE'

    def __init__(self, message, payload=None):
        super().__init__(message, 409, payload)


class UnauthorizedError(StorefrontError):
    """Raised when the request carries no valid identity."""
    code = 'UNAUTHORIZED'

    def __init__(self, message="Authentication required"):
        super().__init__(message, 401)


class ForbiddenError(StorefrontError):
    """Raised when a user lacks permission for an action."""
    code = 'FORBIDDEN'

    def __init__(self, message="Forbidden"):
        super().__init__(message, 403)


class SignatureInvalidError(StorefrontError):
    """Webhook signature could not be verified."""
    code = 'SIGNATURE_INVALID'

    def __init__(self, message="Invalid signature"):
        super().__init__(message, 401)


class GatewayError(StorefrontError):
    """Upstream payment provider failure. Always retryable by the caller."""
    code = 'GATEWAY_ERROR'

    def __init__(self, message, payload=None):
        payload = dict(payload or ())
        payload['retryable'] = True
        super().__init__(message, 502, payload)


class CouponError(StorefrontError):
    """Coupon rejected by the evaluator."""
    EXPIRED = 'EXPIRED'
    INACTIVE = 'INACTIVE'
    USAGE_EXCEEDED = 'USAGE_EXCEEDED'
    BELOW_MINIMUM = 'BELOW_MINIMUM'

    def __init__(self, reason, message=None):
        self.reason = reason
        super().__init__(message or f"Coupon rejected: {reason}", 400, {'reason': reason}, code=reason)
