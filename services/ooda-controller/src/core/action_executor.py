"""
ChronoHeal - Action Executor
============================

Dispatches remediation actions to the cluster-action executor.

The controller only needs an acknowledgement: the executor accepted the
action or it did not. Physical execution happens on the executor's side.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from shared.constants import ActionType, Collaborator
from shared.schemas.incidents import ActionDescriptor
from shared.utils.http_client import ServiceClient, ServiceClientConfig
from shared.utils.logging import get_logger

from src.core.errors import CollaboratorError, CollaboratorTimeoutError

logger = get_logger(__name__)


@dataclass
class DispatchAck:
    accepted: bool
    detail: str = ""


class ActionExecutor(ABC):

    @abstractmethod
    async def dispatch(self, action: ActionDescriptor) -> DispatchAck:
        ...

    async def close(self) -> None:
        return None


class HttpActionExecutor(ActionExecutor):
    """
    Executor reached over HTTP at ``POST /api/v1/execute``.

    2xx is an acceptance; 4xx is a rejection the run records; transport
    failures and 5xx raise CollaboratorError.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 300.0,
        client: Optional[ServiceClient] = None
    ):
        self.client = client or ServiceClient(
            base_url,
            ServiceClientConfig(timeout_seconds=timeout_seconds)
        )

    async def dispatch(self, action: ActionDescriptor) -> DispatchAck:
        name = Collaborator.ACTION_EXECUTOR.value
        payload = {
            "action_id": action.action_id,
            "action_type": action.action_type.value,
            "target": action.target,
            "parameters": action.parameters,
        }

        try:
            response = await self.client.post("/api/v1/execute", data=payload)
        except httpx.TimeoutException as e:
            raise CollaboratorTimeoutError(name, f"dispatch of {action.action_type.value} timed out") from e
        except httpx.HTTPError as e:
            raise CollaboratorError(name, f"unreachable: {e}") from e

        if response.status_code in (200, 201, 202):
            logger.info(
                f"Action dispatched: {action.action_type.value}",
                extra={"action_id": action.action_id, "target": action.target}
            )
            return DispatchAck(accepted=True, detail="accepted")

        if 400 <= response.status_code < 500:
            return DispatchAck(
                accepted=False,
                detail=f"executor rejected action with status {response.status_code}"
            )

        raise CollaboratorError(name, f"executor returned status {response.status_code}")

    async def close(self) -> None:
        await self.client.close()


class SimulatedActionExecutor(ActionExecutor):
    """Accepts every non-manual action and remembers it. For dev mode and tests."""

    def __init__(self):
        self.dispatched: list[ActionDescriptor] = []

    async def dispatch(self, action: ActionDescriptor) -> DispatchAck:
        if action.action_type == ActionType.MANUAL:
            return DispatchAck(accepted=False, detail="manual actions are not executable")

        self.dispatched.append(action)
        logger.info(
            f"[SIMULATED] {action.action_type.value} on {action.target}",
            extra={"action_id": action.action_id}
        )
        return DispatchAck(accepted=True, detail="simulated")
