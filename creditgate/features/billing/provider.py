"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
Providers verify inbound notifications and normalize them into
BillingEvent so the reconciler never sees processor-specific payloads.
"""
from typing import Protocol, Dict

from creditgate.models.billing_event import BillingEvent


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification
    - Parsing processor events into BillingEvent
    """

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Returns:
            Normalized billing event

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook verification or parsing errors."""
    pass
