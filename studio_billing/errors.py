"""Billing exception hierarchy."""


class BillingError(Exception):
    """Base class for billing core errors."""


class GatewayError(BillingError):
    """Raised when the payment gateway answers with an error or an unusable body.

    Transient by construction: the webhook ledger stays unprocessed, so the
    gateway's own redelivery retries the event.
    """


class GatewayTimeoutError(GatewayError):
    """Raised when the bounded payment-detail fetch times out."""


class WebhookSignatureError(BillingError):
    """Raised when a webhook signature is missing, stale or does not match."""


class InvalidExternalReferenceError(BillingError, ValueError):
    """Raised when a payment's external_reference is not "{userId}-{planId}"."""
