"""
ChronoHeal - Reasoning Backend Client
=====================================

Contract and HTTP client for the reasoning backend.

The backend does two things for the controller:
- ``analyze``: look at recent observation units and report anomalies,
  metrics, and an explicit healthy verdict
- ``generate_hypotheses``: propose root causes with actions, restricted
  to the allowed action types
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ValidationError

from shared.constants import ActionType, Collaborator
from shared.schemas.incidents import ObservationUnit
from shared.schemas.reasoning import AnalysisResult, HypothesisBatch
from shared.utils.http_client import ServiceClient, ServiceClientConfig
from shared.utils.logging import get_logger

from src.core.errors import CollaboratorError, CollaboratorTimeoutError, MalformedResponseError

logger = get_logger(__name__)


class ReasoningBackend(ABC):

    @abstractmethod
    async def analyze(
        self,
        units: list[ObservationUnit],
        context: Optional[dict[str, Any]] = None
    ) -> AnalysisResult:
        ...

    @abstractmethod
    async def generate_hypotheses(
        self,
        evidence: list[str],
        allowed_actions: list[ActionType],
        context: Optional[dict[str, Any]] = None
    ) -> HypothesisBatch:
        ...

    async def close(self) -> None:
        return None


class HttpReasoningBackend(ReasoningBackend):
    """
    Reasoning backend reached over HTTP.

    Endpoints:
        POST /api/v1/analyze
        POST /api/v1/hypotheses
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 60.0,
        client: Optional[ServiceClient] = None
    ):
        self.client = client or ServiceClient(
            base_url,
            ServiceClientConfig(timeout_seconds=timeout_seconds)
        )

    async def analyze(
        self,
        units: list[ObservationUnit],
        context: Optional[dict[str, Any]] = None
    ) -> AnalysisResult:
        payload = {
            "units": [
                {
                    "unit_id": u.unit_id,
                    "subject": u.subject,
                    "kind": u.kind.value,
                    "captured_at": u.captured_at.isoformat(),
                    "content": u.describe(),
                }
                for u in units
            ],
            "context": context or {},
        }
        return await self._post("/api/v1/analyze", payload, AnalysisResult)

    async def generate_hypotheses(
        self,
        evidence: list[str],
        allowed_actions: list[ActionType],
        context: Optional[dict[str, Any]] = None
    ) -> HypothesisBatch:
        payload = {
            "evidence": evidence,
            "allowed_actions": [a.value for a in allowed_actions],
            "context": context or {},
        }
        return await self._post("/api/v1/hypotheses", payload, HypothesisBatch)

    async def _post(self, path: str, payload: dict, model: type[BaseModel]) -> Any:
        name = Collaborator.REASONING_BACKEND.value

        try:
            body = await self.client.post_json(path, data=payload)
        except httpx.TimeoutException as e:
            raise CollaboratorTimeoutError(name, f"{path} timed out") from e
        except httpx.HTTPStatusError as e:
            raise CollaboratorError(name, f"{path} returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise CollaboratorError(name, f"{path} unreachable: {e}") from e
        except ValueError as e:
            raise MalformedResponseError(name, f"{path} returned invalid JSON") from e

        try:
            return model.model_validate(body)
        except ValidationError as e:
            logger.warning(
                f"Malformed response from reasoning backend on {path}",
                extra={"errors": e.error_count()}
            )
            raise MalformedResponseError(name, f"{path} response did not validate: {e.error_count()} errors") from e

    async def close(self) -> None:
        await self.client.close()
