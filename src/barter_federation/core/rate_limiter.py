from __future__ import annotations

import time
from collections import defaultdict
from typing import Dict

from fastapi import HTTPException, Request, status

from barter_federation.core.settings import FederationSettings


class RateLimiter:
    """
    Per-peer rate limiter for the server-to-server endpoints, keyed on the
    remote address. Uses a fixed window counter for simplicity.
    """

    def __init__(self, settings: FederationSettings):
        """Initializes the RateLimiter with federation settings.

        Args:
            settings: The FederationSettings instance containing rate limit configurations.
        """
        self.settings = settings
        # {remote_address: {timestamp_window: count}}
        self.requests: Dict[str, Dict[int, int]] = defaultdict(lambda: defaultdict(int))
        self.window_size = 1  # 1 second window for RPS

    async def __call__(self, request: Request):
        """Applies rate limiting based on the caller's address.

        Raises:
            HTTPException: If the rate limit or burst limit is exceeded.
        """
        remote = request.client.host if request.client else "unknown"
        current_window = int(time.time()) // self.window_size

        for key in list(self.requests.keys()):
            for window in list(self.requests[key].keys()):
                if window < current_window - 1:  # Keep current and previous window
                    del self.requests[key][window]
            if not self.requests[key]:
                del self.requests[key]

        self.requests[remote][current_window] += 1
        current_count = self.requests[remote][current_window]

        if current_count > self.settings.federation_rate_limits_default_rps:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded for this server.",
            )

        total_recent_requests = sum(
            self.requests[remote][w]
            for w in (current_window, current_window - 1)
            if w in self.requests[remote]
        )
        if total_recent_requests > self.settings.federation_rate_limits_burst:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Burst rate limit exceeded for this server.",
            )
