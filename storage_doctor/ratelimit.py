"""Fixed-window admission control for LLM requests.

One RateLimiter is shared by every caller of a provider instance. Each
request reserves its estimated token cost plus one request slot; when the
current window cannot fit it, the caller sleeps until the window rolls over
or its cancel event fires.
"""

import logging
import threading
import time
from typing import Callable, Mapping

from .report import CancelledError

logger = logging.getLogger(__name__)

# observer(wait_seconds, waiting): waiting=True when a wait begins, False when it ends
RateLimitObserver = Callable[[float, bool], None]

DEFAULT_WINDOW = 60.0


class RateLimiter:
    def __init__(
        self,
        window: float,
        max_tokens: int,
        max_requests: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window = window
        self.max_tokens = max_tokens
        self.max_requests = max_requests
        self._clock = clock
        self._lock = threading.Lock()
        self.window_start: float | None = None
        self.used_tokens = 0
        self.used_requests = 0

    def reserve(self, tokens: int) -> float:
        """Try to admit a request of `tokens`.

        Returns 0.0 and commits the reservation when it fits, otherwise the
        seconds left in the current window (nothing is committed).
        """
        tokens = max(tokens, 0)
        with self._lock:
            now = self._clock()
            if self.window_start is None or now - self.window_start >= self.window:
                self.window_start = now
                self.used_tokens = 0
                self.used_requests = 0

            tokens_ok = (
                self.max_tokens <= 0 or self.used_tokens + tokens <= self.max_tokens
            )
            requests_ok = (
                self.max_requests <= 0 or self.used_requests + 1 <= self.max_requests
            )
            if tokens_ok and requests_ok:
                self.used_tokens += tokens
                self.used_requests += 1
                return 0.0

            return max(self.window_start + self.window - now, 0.0)

    def wait(
        self,
        tokens: int,
        *,
        cancel: threading.Event | None = None,
        observer: RateLimitObserver | None = None,
    ) -> None:
        """Block until `tokens` are admitted. Raises CancelledError if `cancel` fires."""
        if cancel is None:
            cancel = threading.Event()
        while True:
            if cancel.is_set():
                raise CancelledError("cancelled while waiting for rate limit")
            wait = self.reserve(tokens)
            if wait == 0:
                _notify(observer, 0.0, False)
                return
            logger.debug(
                "rate limit reached (%d tokens requested), waiting %.1fs", tokens, wait
            )
            _notify(observer, wait, True)
            cancelled = cancel.wait(wait)
            _notify(observer, 0.0, False)
            if cancelled:
                raise CancelledError("cancelled while waiting for rate limit")

    def update_limits(self, tokens_per_window: int, requests_per_window: int) -> None:
        """Replace the caps; zero or negative values leave a cap unchanged."""
        with self._lock:
            if tokens_per_window > 0:
                self.max_tokens = tokens_per_window
            if requests_per_window > 0:
                self.max_requests = requests_per_window

    def update_from_headers(
        self, headers: Mapping[str, str], tokens_key: str, requests_key: str
    ) -> None:
        """Adopt server-reported quotas. Missing or malformed values are ignored."""
        self.update_limits(
            parse_rate_limit_header(headers.get(tokens_key)),
            parse_rate_limit_header(headers.get(requests_key)),
        )


def _notify(observer: RateLimitObserver | None, wait: float, waiting: bool) -> None:
    if observer is not None:
        observer(wait, waiting)


def parse_rate_limit_header(value: str | None) -> int:
    """Parse a quota header value; 0 means "unknown"."""
    if value is None:
        return 0
    value = value.strip()
    if not value:
        return 0
    if "." in value:
        try:
            return int(float(value))
        except (ValueError, OverflowError):
            return 0
    try:
        return int(value)
    except ValueError:
        return 0


def default_rate_limits(provider: str) -> tuple[int, int]:
    """(tokens per minute, requests per minute) before any server feedback."""
    return {
        "anthropic": (50_000, 60),
        "openai": (50_000, 60),
    }.get(provider.lower(), (50_000, 60))
