"""
Per-caller rate limiting for inference requests.
"""
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

from donor_import.core.config import Settings, settings as default_settings
from donor_import.integrations.inference import RateLimitExceeded

MINUTE = 60.0
HOUR = 3600.0


class RateLimiter:
    """
    Sliding-window limiter with a per-minute and a per-hour request budget
    for each caller identity, plus a per-request token ceiling.

    The clock is injectable so windows can be advanced in tests.
    """

    def __init__(
        self,
        max_per_minute: int,
        max_per_hour: int,
        max_tokens_per_request: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_per_minute = max_per_minute
        self.max_per_hour = max_per_hour
        self.max_tokens_per_request = max_tokens_per_request
        self._clock = clock
        self._lock = threading.Lock()
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "RateLimiter":
        config = config or default_settings
        return cls(
            max_per_minute=config.inference_max_requests_per_minute,
            max_per_hour=config.inference_max_requests_per_hour,
            max_tokens_per_request=config.inference_max_tokens_per_request,
        )

    def check(self, identity: str, estimated_tokens: int = 0) -> None:
        """
        Record one request for ``identity`` or raise ``RateLimitExceeded``.

        Rejected requests do not consume budget.
        """
        if estimated_tokens > self.max_tokens_per_request:
            raise RateLimitExceeded(
                f"Request too large: about {estimated_tokens} tokens "
                f"(limit {self.max_tokens_per_request})"
            )

        now = self._clock()
        with self._lock:
            window = self._requests[identity]
            while window and now - window[0] >= HOUR:
                window.popleft()

            if len(window) >= self.max_per_hour:
                raise RateLimitExceeded(
                    f"Hourly request limit of {self.max_per_hour} reached",
                    retry_after_seconds=HOUR - (now - window[0]),
                )

            recent = [t for t in window if now - t < MINUTE]
            if len(recent) >= self.max_per_minute:
                raise RateLimitExceeded(
                    f"Per-minute request limit of {self.max_per_minute} reached",
                    retry_after_seconds=MINUTE - (now - recent[0]),
                )

            window.append(now)

    def remaining(self, identity: str) -> Dict[str, int]:
        now = self._clock()
        with self._lock:
            window = self._requests.get(identity, deque())
            hour_count = sum(1 for t in window if now - t < HOUR)
            minute_count = sum(1 for t in window if now - t < MINUTE)
        return {
            "minute": max(0, self.max_per_minute - minute_count),
            "hour": max(0, self.max_per_hour - hour_count),
        }
