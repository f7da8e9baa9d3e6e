import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Dict, Optional, Protocol

import httpx

from .errors import UpstreamUnavailable

log = logging.getLogger(__name__)


@dataclass
class ActivityMetrics:
    active_days: int = 0
    message_count: int = 0
    video_calls: int = 0
    meetings: int = 0
    home_visits: int = 0
    diary_entries: int = 0
    memories: int = 0

    def value_of(self, metric: str) -> int:
        return int(getattr(self, metric, 0) or 0)

    @classmethod
    def from_payload(cls, data: dict) -> "ActivityMetrics":
        known = {f.name for f in fields(cls)}
        return cls(**{k: max(0, int(v)) for k, v in data.items() if k in known})


class MetricsSource(Protocol):
    async def fetch(self, relationship_id: str, since: Optional[datetime] = None) -> ActivityMetrics:
        """Counters for activity since `since` (whole relationship when None)."""
        ...


class HttpMetricsSource:
    """
    Reads activity counters from the activity service:
        GET {base_url}/relationships/{id}/activity?since=<iso8601>
    Any transport failure, non-2xx answer, or unparsable body is reported as
    UpstreamUnavailable so the evaluator can fall back to last-known values.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def fetch(self, relationship_id: str, since: Optional[datetime] = None) -> ActivityMetrics:
        params = {"since": since.isoformat()} if since else None
        url = f"{self.base_url}/relationships/{relationship_id}/activity"
        try:
            if self._client is not None:
                r = await self._client.get(url, params=params, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    r = await client.get(url, params=params)
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPError as e:
            log.warning("[METRICS %s] activity source unreachable: %s", relationship_id, e)
            raise UpstreamUnavailable(f"Activity source unavailable: {e}") from e
        except ValueError as e:
            log.warning("[METRICS %s] bad activity payload: %s", relationship_id, e)
            raise UpstreamUnavailable("Activity source returned an unreadable payload") from e

        if not isinstance(data, dict):
            raise UpstreamUnavailable("Activity source returned an unreadable payload")
        try:
            return ActivityMetrics.from_payload(data)
        except (TypeError, ValueError) as e:
            raise UpstreamUnavailable("Activity source returned an unreadable payload") from e


class InMemoryMetricsSource:
    """Counters held in memory; `available = False` simulates an outage."""

    def __init__(self):
        self.metrics: Dict[str, ActivityMetrics] = {}
        self.available = True

    def set(self, relationship_id: str, **counters) -> ActivityMetrics:
        current = self.metrics.setdefault(relationship_id, ActivityMetrics())
        for name, value in counters.items():
            setattr(current, name, value)
        return current

    async def fetch(self, relationship_id: str, since: Optional[datetime] = None) -> ActivityMetrics:
        if not self.available:
            raise UpstreamUnavailable("Activity source unavailable")
        m = self.metrics.get(relationship_id, ActivityMetrics())
        return ActivityMetrics(**{f.name: getattr(m, f.name) for f in fields(m)})
