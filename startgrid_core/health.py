"""Connection health check against the remote store."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from .errors import RemoteUnavailable
from .store import RemoteStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthStatus:
    is_online: bool
    latency_ms: int
    checked_at: datetime
    error: str | None = None


async def check_health(store: RemoteStore, timeout: float = 5.0) -> HealthStatus:
    """Ping the store once and report reachability and round-trip latency."""
    started = time.monotonic()
    error: str | None = None
    try:
        await asyncio.wait_for(store.ping(), timeout=timeout)
    except asyncio.TimeoutError:
        error = f"no answer within {timeout}s"
    except (RemoteUnavailable, OSError) as e:
        error = str(e) or "connection failed"
    latency_ms = int((time.monotonic() - started) * 1000)
    if error is not None:
        logger.warning(f"Store health check failed: {error}")
    return HealthStatus(
        is_online=error is None,
        latency_ms=latency_ms,
        checked_at=datetime.now(timezone.utc),
        error=error,
    )
