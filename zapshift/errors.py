"""Error taxonomy shared by the stores, the Stripe integration and the routes.

Each error carries the HTTP status the request boundary answers with.
"""


class ZapShiftError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(ZapShiftError):
    status_code = 400


class Unauthorized(ZapShiftError):
    status_code = 401


class Forbidden(ZapShiftError):
    status_code = 403


class NotFound(ZapShiftError):
    status_code = 404


class StoreUnavailable(ZapShiftError):
    status_code = 500


class ExternalServiceError(ZapShiftError):
    """The payment processor was unreachable or answered with something unusable."""

    status_code = 502


class MalformedSession(ExternalServiceError):
    """The processor answered, but the session can never be reconciled here."""
