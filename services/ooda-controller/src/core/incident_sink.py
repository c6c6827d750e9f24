"""
ChronoHeal - Incident Sink
==========================

Where finished IncidentRuns go. Recording is fire-and-forget from the
controller's point of view: a sink failure is logged and never changes the
run's outcome.
"""

from abc import ABC, abstractmethod
from collections import deque
from threading import Lock
from typing import Optional

import httpx

from shared.schemas.incidents import IncidentRun
from shared.utils.http_client import ServiceClient, ServiceClientConfig
from shared.utils.logging import get_logger
from shared.utils.retry import RetryConfig, with_retry

logger = get_logger(__name__)


class IncidentSink(ABC):

    @abstractmethod
    async def record(self, run: IncidentRun) -> None:
        ...

    async def close(self) -> None:
        return None


class InMemoryIncidentSink(IncidentSink):
    """Keeps the most recent finished runs in memory, newest last."""

    def __init__(self, max_history: int = 1000):
        self._runs: deque[IncidentRun] = deque(maxlen=max_history)
        self._lock = Lock()

    async def record(self, run: IncidentRun) -> None:
        with self._lock:
            self._runs.append(run)

    def get_history(self, subject: Optional[str] = None, limit: int = 50) -> list[IncidentRun]:
        """Recorded runs, newest first."""
        with self._lock:
            runs = list(self._runs)

        if subject:
            runs = [r for r in runs if r.subject == subject]

        runs.reverse()
        return runs[:limit]

    def count(self) -> int:
        with self._lock:
            return len(self._runs)


class HttpIncidentSink(IncidentSink):
    """Posts finished runs to the incident store, retrying on transport errors."""

    def __init__(
        self,
        base_url: str,
        retry: Optional[RetryConfig] = None,
        client: Optional[ServiceClient] = None
    ):
        self.client = client or ServiceClient(base_url, ServiceClientConfig(timeout_seconds=10.0))
        self.retry = retry or RetryConfig(
            max_attempts=3,
            base_delay=0.5,
            retryable_exceptions=(httpx.TransportError,),
        )
        self._post = with_retry(self.retry)(self._post_once)

    async def _post_once(self, run: IncidentRun) -> None:
        response = await self.client.post("/api/v1/incidents", data=run.model_dump(mode="json"))
        response.raise_for_status()

    async def record(self, run: IncidentRun) -> None:
        await self._post(run)
        logger.debug(f"Run {run.run_id} delivered to incident store")

    async def close(self) -> None:
        await self.client.close()


class CompositeIncidentSink(IncidentSink):
    """Records to several sinks. A failing sink does not stop the others."""

    def __init__(self, sinks: list[IncidentSink]):
        self.sinks = sinks

    async def record(self, run: IncidentRun) -> None:
        for sink in self.sinks:
            try:
                await sink.record(run)
            except Exception as e:
                logger.error(
                    f"{type(sink).__name__} failed to record run {run.run_id}: {e}",
                    exc_info=True
                )

    async def close(self) -> None:
        for sink in self.sinks:
            await sink.close()
