"""
Subscription error taxonomy

Every failure that crosses a platform or storage boundary is wrapped into a
SubscriptionException carrying a SubscriptionErrorKind. The kind decides
whether the error handler retries, and what the user is told.
"""

from enum import Enum
from typing import Any, Optional
from datetime import datetime


class SubscriptionErrorKind(str, Enum):
    """Possible subscription-related errors"""
    NETWORK_ERROR = "network_error"
    PLATFORM_ERROR = "platform_error"
    INVALID_PRODUCT = "invalid_product"
    PURCHASE_CANCELLED = "purchase_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    VERIFICATION_FAILED = "verification_failed"
    PAYMENT_FAILED = "payment_failed"
    ALREADY_SUBSCRIBED = "already_subscribed"
    FEATURE_NOT_AVAILABLE = "feature_not_available"
    USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"
    RESTORATION_FAILED = "restoration_failed"
    INVALID_STATE = "invalid_state"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"

    @property
    def title(self) -> str:
        return ERROR_DETAILS[self][0]

    @property
    def description(self) -> str:
        return ERROR_DETAILS[self][1]

    @property
    def user_message(self) -> str:
        return ERROR_DETAILS[self][2]

    @property
    def should_retry(self) -> bool:
        """Transient failures worth another attempt"""
        return self in TRANSIENT_KINDS

    @property
    def is_recoverable(self) -> bool:
        return self in TRANSIENT_KINDS


TRANSIENT_KINDS = frozenset({
    SubscriptionErrorKind.NETWORK_ERROR,
    SubscriptionErrorKind.PLATFORM_ERROR,
    SubscriptionErrorKind.VERIFICATION_FAILED,
    SubscriptionErrorKind.SERVER_ERROR,
})

# kind -> (title, description, user message)
ERROR_DETAILS = {
    SubscriptionErrorKind.NETWORK_ERROR: (
        "Network Error",
        "Unable to connect to subscription services",
        "Please check your internet connection and try again.",
    ),
    SubscriptionErrorKind.PLATFORM_ERROR: (
        "Platform Error",
        "Error communicating with platform services",
        "There was an issue with the app store. Please try again later.",
    ),
    SubscriptionErrorKind.INVALID_PRODUCT: (
        "Invalid Product",
        "The requested subscription product is not available",
        "This subscription option is currently unavailable.",
    ),
    SubscriptionErrorKind.PURCHASE_CANCELLED: (
        "Purchase Cancelled",
        "The subscription purchase was cancelled",
        "Subscription purchase was cancelled.",
    ),
    SubscriptionErrorKind.SUBSCRIPTION_EXPIRED: (
        "Subscription Expired",
        "Your subscription has expired",
        "Your subscription has expired. Please renew to continue using premium features.",
    ),
    SubscriptionErrorKind.VERIFICATION_FAILED: (
        "Verification Failed",
        "Unable to verify subscription status",
        "Unable to verify your subscription. Please try again.",
    ),
    SubscriptionErrorKind.PAYMENT_FAILED: (
        "Payment Failed",
        "Payment could not be processed",
        "Payment could not be processed. Please check your payment method.",
    ),
    SubscriptionErrorKind.ALREADY_SUBSCRIBED: (
        "Already Subscribed",
        "You already have an active subscription",
        "You already have an active subscription.",
    ),
    SubscriptionErrorKind.FEATURE_NOT_AVAILABLE: (
        "Feature Not Available",
        "This feature requires a subscription upgrade",
        "This feature requires a subscription upgrade.",
    ),
    SubscriptionErrorKind.USAGE_LIMIT_EXCEEDED: (
        "Usage Limit Exceeded",
        "You have reached your monthly usage limit",
        "You have reached your monthly usage limit. Upgrade to continue.",
    ),
    SubscriptionErrorKind.RESTORATION_FAILED: (
        "Restoration Failed",
        "Unable to restore previous subscriptions",
        "Unable to restore your previous subscriptions.",
    ),
    SubscriptionErrorKind.INVALID_STATE: (
        "Invalid State",
        "Subscription is in an invalid state",
        "Subscription is in an invalid state. Please contact support.",
    ),
    SubscriptionErrorKind.SERVER_ERROR: (
        "Server Error",
        "Subscription server encountered an error",
        "Server error occurred. Please try again later.",
    ),
    SubscriptionErrorKind.UNKNOWN: (
        "Unknown Error",
        "An unexpected error occurred",
        "An unexpected error occurred. Please try again.",
    ),
}


class SubscriptionException(Exception):
    """Raised when a subscription operation fails"""

    def __init__(
        self,
        kind: SubscriptionErrorKind,
        message: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        self.kind = kind
        self.message = message
        self.original_error = original_error
        super().__init__(self._format())

    def _format(self) -> str:
        text = f"SubscriptionException: {self.kind.title}"
        if self.message:
            text += f" - {self.message}"
        if self.original_error is not None:
            text += f" (Original: {self.original_error})"
        return text

    @property
    def display_message(self) -> str:
        return self.message or self.kind.user_message

    @property
    def title(self) -> str:
        return self.kind.title

    @property
    def description(self) -> str:
        return self.kind.description

    @property
    def should_retry(self) -> bool:
        return self.kind.should_retry

    @property
    def is_recoverable(self) -> bool:
        return self.kind.is_recoverable

    # ====================================================================
    # Factories
    # ====================================================================

    @classmethod
    def network_error(cls, message: Optional[str] = None,
                      original_error: Optional[BaseException] = None) -> 'SubscriptionException':
        return cls(SubscriptionErrorKind.NETWORK_ERROR, message, original_error)

    @classmethod
    def platform_error(cls, message: Optional[str] = None,
                       original_error: Optional[BaseException] = None) -> 'SubscriptionException':
        return cls(SubscriptionErrorKind.PLATFORM_ERROR, message, original_error)

    @classmethod
    def invalid_product(cls, product_id: Optional[str] = None) -> 'SubscriptionException':
        message = f'Product "{product_id}" is not available' if product_id else None
        return cls(SubscriptionErrorKind.INVALID_PRODUCT, message)

    @classmethod
    def purchase_cancelled(cls) -> 'SubscriptionException':
        return cls(SubscriptionErrorKind.PURCHASE_CANCELLED)

    @classmethod
    def subscription_expired(cls, expiration_date: Optional[datetime] = None) -> 'SubscriptionException':
        message = f"Subscription expired on {expiration_date.isoformat()}" if expiration_date else None
        return cls(SubscriptionErrorKind.SUBSCRIPTION_EXPIRED, message)

    @classmethod
    def verification_failed(cls, message: Optional[str] = None,
                            original_error: Optional[BaseException] = None) -> 'SubscriptionException':
        return cls(SubscriptionErrorKind.VERIFICATION_FAILED, message, original_error)

    @classmethod
    def payment_failed(cls, message: Optional[str] = None,
                       original_error: Optional[BaseException] = None) -> 'SubscriptionException':
        return cls(SubscriptionErrorKind.PAYMENT_FAILED, message, original_error)

    @classmethod
    def already_subscribed(cls, message: Optional[str] = None) -> 'SubscriptionException':
        return cls(SubscriptionErrorKind.ALREADY_SUBSCRIBED, message)

    @classmethod
    def feature_not_available(cls, feature: str) -> 'SubscriptionException':
        return cls(
            SubscriptionErrorKind.FEATURE_NOT_AVAILABLE,
            f'Feature "{feature}" requires a subscription upgrade',
        )

    @classmethod
    def usage_limit_exceeded(cls, feature: str) -> 'SubscriptionException':
        return cls(
            SubscriptionErrorKind.USAGE_LIMIT_EXCEEDED,
            f'Monthly limit exceeded for "{feature}"',
        )

    @classmethod
    def restoration_failed(cls, message: Optional[str] = None,
                           original_error: Optional[BaseException] = None) -> 'SubscriptionException':
        return cls(SubscriptionErrorKind.RESTORATION_FAILED, message, original_error)

    @classmethod
    def invalid_state(cls, message: Optional[str] = None) -> 'SubscriptionException':
        return cls(SubscriptionErrorKind.INVALID_STATE, message)

    @classmethod
    def server_error(cls, message: Optional[str] = None,
                     original_error: Optional[BaseException] = None) -> 'SubscriptionException':
        return cls(SubscriptionErrorKind.SERVER_ERROR, message, original_error)

    @classmethod
    def unknown(cls, message: Optional[str] = None,
                original_error: Optional[BaseException] = None) -> 'SubscriptionException':
        return cls(SubscriptionErrorKind.UNKNOWN, message, original_error)

    @classmethod
    def wrap(cls, error: Any, message: Optional[str] = None) -> 'SubscriptionException':
        """Return ``error`` unchanged if already typed, else wrap it as unknown"""
        if isinstance(error, cls):
            return error
        return cls.unknown(message, error)
