from typing import Any


class BillingError(Exception):
    """Base class. `status_code` is what the HTTP layer answers with."""

    status_code = 500
    retryable = False

    def __init__(self, detail: str = "Billing error", status_code: int | None = None):
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class MissingFieldsError(BillingError):
    status_code = 400

    def __init__(self, missing: list[str], detail: str | None = None):
        self.missing = list(missing)
        super().__init__(detail or f"Missing required fields: {', '.join(self.missing)}")


class InvalidRequestError(BillingError):
    status_code = 400


class SignatureVerificationError(BillingError):
    status_code = 400


class WebhookSignatureError(SignatureVerificationError):
    status_code = 401


class PaymentNotCompletedError(BillingError):
    status_code = 400


class NotFoundError(BillingError):
    status_code = 404


class ConfigurationError(BillingError):
    status_code = 500


class GatewayError(BillingError):
    status_code = 502

    def __init__(
        self,
        gateway: str,
        detail: str,
        http_status: int | None = None,
        body: Any = None,
    ):
        super().__init__(detail)
        self.gateway = gateway
        self.http_status = http_status
        self.body = body


class GatewayTimeoutError(GatewayError):
    status_code = 504
    retryable = True


class PlanCreationError(GatewayError):
    pass


class PlanCreationInProgressError(PlanCreationError):
    status_code = 503
    retryable = True
