from typing import Any


class BillingError(Exception):
    """Base error for the subscription and payment engine."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(BillingError):
    """A precondition of the requested operation does not hold."""


class NotFoundError(BillingError):
    """A plan, subscription, payment or user lookup missed."""


class GatewayError(BillingError):
    pass


class GatewayConfigError(GatewayError):
    """Gateway credentials are missing; never retried."""


class GatewayRequestError(GatewayError):
    """The gateway could not be reached or answered with an error."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        payload: Any | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload
