"""Exception types raised inside the payment service."""


class PaymentServiceError(Exception):
    pass


class SignatureInvalid(PaymentServiceError):
    """The stripe-signature header does not match the raw body."""


class MalformedPayload(PaymentServiceError):
    """The body was signed correctly but is not a usable event."""


class CheckoutMetadataError(PaymentServiceError):
    """Checkout session metadata is missing fields a workflow branch needs."""


class ProvisioningError(PaymentServiceError):
    """The project service rejected the request or could not be reached."""


class NotificationError(PaymentServiceError):
    """The notification service rejected a delivery request."""
