"""
Billing platform contract

SubscriptionService is the boundary to the App Store / Play Store billing
integration. The engine only consumes this contract; MockSubscriptionService
is the reference implementation and ResilientSubscriptionService wraps any
implementation with retry, fallback and connectivity handling.

Implementations raise SubscriptionException for every failure and
RuntimeError once disposed.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from subscription.models import SubscriptionEvent, SubscriptionProduct, SubscriptionStatus
from subscription.streams import StatusStream


class SubscriptionService(ABC):
    """Abstract subscription platform adapter"""

    @abstractmethod
    async def get_subscription_status(self) -> SubscriptionStatus:
        """Current subscription status from the platform"""

    @abstractmethod
    def subscription_status_stream(self) -> StatusStream[SubscriptionStatus]:
        """Stream of status changes; the current status is replayed to new subscribers"""

    @abstractmethod
    async def get_available_products(self) -> List[SubscriptionProduct]:
        """Product catalog offered by the platform"""

    @abstractmethod
    async def purchase_subscription(self, product_id: str) -> bool:
        """
        Start a purchase.

        Returns True on success and False when the user backed out. Hard
        failures raise SubscriptionException.
        """

    @abstractmethod
    async def restore_subscriptions(self) -> bool:
        """Restore previous purchases; False when nothing was found"""

    @abstractmethod
    async def refresh_subscription_status(self) -> None:
        """Re-read entitlement state from the platform"""

    @abstractmethod
    async def is_product_available(self, product_id: str) -> bool:
        ...

    @abstractmethod
    async def get_product_info(self, product_id: str) -> Optional[SubscriptionProduct]:
        """Product details, or None for an unknown id"""

    @abstractmethod
    async def cancel_subscription(self) -> None:
        """Redirect to platform cancellation; access is not revoked immediately"""

    @abstractmethod
    async def can_manage_subscription(self) -> bool:
        ...

    @abstractmethod
    async def open_subscription_management(self) -> None:
        ...

    @abstractmethod
    async def verify_subscription_status(self) -> SubscriptionStatus:
        """Deeper entitlement check than refresh (receipt validation)"""

    @abstractmethod
    async def supports_verification(self) -> bool:
        ...

    @abstractmethod
    async def get_subscription_history(self) -> List[SubscriptionEvent]:
        ...

    @abstractmethod
    async def has_pending_changes(self) -> bool:
        """Whether the platform reports unfinished transactions"""

    @abstractmethod
    def dispose(self) -> None:
        """Release resources; the service is unusable afterwards"""
