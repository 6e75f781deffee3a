"""Security components for inbound GitHub webhooks.

HMAC-SHA256 signature verification gates every delivery; a per-repository
sliding-window limiter protects the sync path from floods.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
_FINGERPRINT_LABEL = b"repomirror-webhook-secret"


# ---------------------------------------------------------------------------
# Signature Verification
# ---------------------------------------------------------------------------


def verify_webhook_signature(
    signature_header: Optional[str],
    payload: bytes,
    secret: Optional[str],
) -> bool:
    """Verify a GitHub ``X-Hub-Signature-256`` header.

    Uses constant-time comparison. Never raises: malformed input of any
    kind yields False.

    Args:
        signature_header: Header value, ``sha256=<hex>``
        payload: Raw request body exactly as received
        secret: Shared webhook secret

    Returns:
        True if the signature matches
    """
    try:
        if not signature_header or not secret:
            return False
        if not signature_header.startswith(SIGNATURE_PREFIX):
            logger.warning("Invalid signature header format")
            return False

        received = signature_header[len(SIGNATURE_PREFIX):].strip().lower()
        expected = hmac.new(
            key=secret.encode("utf-8"),
            msg=payload,
            digestmod=hashlib.sha256,
        ).hexdigest()

        is_valid = hmac.compare_digest(received.encode("ascii"), expected.encode("ascii"))
        if not is_valid:
            logger.warning("Webhook signature verification failed")
        return is_valid
    except Exception as exc:
        logger.warning(f"Webhook signature could not be verified: {exc.__class__.__name__}")
        return False


def secret_fingerprint(secret: str) -> str:
    """Non-reversible fingerprint of the secret, stored instead of the secret."""
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=_FINGERPRINT_LABEL,
        digestmod=hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Rate Limiting
# ---------------------------------------------------------------------------


class WebhookRateLimiter:
    """Sliding-window rate limiter keyed by repository.

    Each repository has an independent window so one noisy repository does
    not block the others.

    Example:
        >>> limiter = WebhookRateLimiter(max_requests_per_minute=60)
        >>> limiter.allow_request("octocat/Hello-World")
        True
    """

    WINDOW_SECONDS = 60.0

    def __init__(
        self,
        max_requests_per_minute: int = 60,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests_per_minute < 1:
            raise ValueError("max_requests_per_minute must be at least 1")
        self.max_requests = max_requests_per_minute
        self.request_times: Dict[str, Deque[float]] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def allow_request(self, repo_full_name: str) -> bool:
        """Record a request and return False if the window is already full."""
        with self._lock:
            now = self._clock()
            times = self.request_times.setdefault(repo_full_name, deque())
            self._evict(times, now)

            if len(times) >= self.max_requests:
                logger.warning(
                    f"Rate limit exceeded for repository {repo_full_name}",
                    extra={
                        "repository": repo_full_name,
                        "requests_in_window": len(times),
                        "max_requests": self.max_requests,
                    },
                )
                return False

            times.append(now)
            return True

    def get_current_rate(self, repo_full_name: str) -> int:
        with self._lock:
            times = self.request_times.get(repo_full_name)
            if not times:
                return 0
            self._evict(times, self._clock())
            return len(times)

    def reset(self, repo_full_name: Optional[str] = None) -> None:
        with self._lock:
            if repo_full_name is None:
                self.request_times.clear()
            else:
                self.request_times.pop(repo_full_name, None)

    def cleanup_old_entries(self, max_age_seconds: float = 300) -> int:
        """Drop tracking for repositories idle longer than ``max_age_seconds``."""
        with self._lock:
            now = self._clock()
            stale = [
                name
                for name, times in self.request_times.items()
                if not times or times[-1] < now - max_age_seconds
            ]
            for name in stale:
                del self.request_times[name]
        if stale:
            logger.debug(f"Cleaned up rate limiter tracking for {len(stale)} inactive repositories")
        return len(stale)

    def _evict(self, times: Deque[float], now: float) -> None:
        while times and times[0] <= now - self.WINDOW_SECONDS:
            times.popleft()


__all__ = [
    "SIGNATURE_PREFIX",
    "WebhookRateLimiter",
    "secret_fingerprint",
    "verify_webhook_signature",
]
