"""GitHub webhook integration for near-real-time mirror updates.

- **WebhookServer**: aiohttp endpoint receiving deliveries
- **WebhookSubscriptionManager**: hook lifecycle and delivery tracking
- **Security**: HMAC-SHA256 signature verification and rate limiting

Webhooks complement the periodic staleness sweep; the mirror stays correct
without them, only less current.
"""

from .models import CRITICAL_EVENT_TYPES, WebhookEvent, WebhookEventType
from .security import WebhookRateLimiter, secret_fingerprint, verify_webhook_signature
from .server import WebhookServer
from .subscription_manager import WebhookSubscriptionManager, is_unreachable_callback

__all__ = [
    # Models
    "CRITICAL_EVENT_TYPES",
    "WebhookEvent",
    "WebhookEventType",
    # Security
    "WebhookRateLimiter",
    "secret_fingerprint",
    "verify_webhook_signature",
    # Server
    "WebhookServer",
    # Subscriptions
    "WebhookSubscriptionManager",
    "is_unreachable_callback",
]
