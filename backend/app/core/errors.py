"""Domain exceptions raised by the billing services.

Each carries the HTTP status the API layer answers with, so routes can
translate them with a single ``except BillingError``.
"""


class BillingError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class ValidationFailed(BillingError):
    status_code = 400


class WebhookSignatureError(BillingError):
    status_code = 400


class AuthorizationError(BillingError):
    status_code = 403


class NotFoundError(BillingError):
    status_code = 404


class ConflictError(BillingError):
    status_code = 409


class StaleWriteError(ConflictError):
    pass


class UnsupportedOperation(BillingError):
    status_code = 501


class ProviderError(BillingError):
    status_code = 502

    def __init__(self, provider: str, detail: str):
        self.provider = provider
        super().__init__(detail)
