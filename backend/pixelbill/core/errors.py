"""Domain exceptions raised by the billing services.

Routers and webhook dispatchers translate these into HTTP responses:

- ``WebhookVerificationError``: bad or missing signature, never mutates state (400)
- ``MalformedEventError``: verified event missing required fields (400)
- ``RetryExhaustedError``: transient failure that outlived its retry budget (503)
- ``UserNotFoundError`` / ``NoBillingProfileError``: not-found conditions (404 / 400)
"""


class BillingError(Exception):
    """Base class for billing sync errors"""


class WebhookNotConfiguredError(BillingError):
    """The signing secret for a webhook channel is not configured"""


class WebhookVerificationError(BillingError):
    """Webhook signature or payload could not be verified"""


class MalformedEventError(BillingError):
    """A verified event is missing data required to act on it"""


class UserNotFoundError(BillingError):
    """No local user matches the given identity"""


class NoBillingProfileError(BillingError):
    """User has no billing-provider customer bound yet"""


class CheckoutSessionError(BillingError):
    """The billing provider did not return a usable checkout session"""


class InsufficientCreditsError(BillingError):
    """User does not have enough credits for the requested operation"""


class RetryExhaustedError(BillingError):
    """A bounded retry gave up"""

    def __init__(self, message: str, attempts: int, retry_after: float = 2.0):
        super().__init__(message)
        self.attempts = attempts
        self.retry_after = retry_after
