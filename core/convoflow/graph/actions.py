"""
Action Executor - side effects attached to nodes.

Actions run in declaration order against the CRM collaborator. Each one is
interpolated against the session variables first, then dispatched. A
failure is captured in its ActionResult and reported as a ``backend_log``
event; the remaining actions still run.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from convoflow.crm.client import CRMClient
from convoflow.errors import ActionFailure, CRMError
from convoflow.graph.node import ActionSpec, ActionType
from convoflow.graph.variables import VariableStore
from convoflow.runtime.events import BackendLogEvent, EngineEvent

logger = logging.getLogger(__name__)

EmitFn = Callable[[EngineEvent], Awaitable[None]]
CustomActionHandler = Callable[[dict[str, Any], VariableStore], Awaitable[Any]]


@dataclass
class ActionResult:
    """Outcome of a single action."""

    action_type: str
    success: bool
    index: int = 0
    error: str | None = None
    retryable: bool = False
    data: dict[str, Any] = field(default_factory=dict)
    latency_ms: int = 0

    def describe(self) -> str:
        if self.success:
            return f"Action {self.action_type} succeeded"
        return f"Action {self.action_type} failed: {self.error}"


class ActionExecutor:
    """
    Runs a node's action list.

    Usage:
        executor = ActionExecutor(crm=client, emit=channel.send)
        results = await executor.execute(node.actions, variables, session_id="s1")
    """

    def __init__(
        self,
        crm: CRMClient | None = None,
        custom_handlers: dict[str, CustomActionHandler] | None = None,
        emit: EmitFn | None = None,
    ):
        self.crm = crm
        self.custom_handlers = dict(custom_handlers or {})
        self._emit = emit

    def register_handler(self, name: str, handler: CustomActionHandler) -> None:
        """Register a handler for ``custom`` actions with ``data.handler == name``."""
        self.custom_handlers[name] = handler

    async def execute(
        self,
        actions: list[ActionSpec],
        variables: VariableStore,
        session_id: str = "",
    ) -> list[ActionResult]:
        results: list[ActionResult] = []
        for index, action in enumerate(actions):
            start = time.time()
            try:
                payload = self._payload(action, variables)
                data = await self._dispatch(action.type, payload, variables, session_id)
                result = ActionResult(
                    action_type=action.type.value,
                    success=True,
                    index=index,
                    data=data if isinstance(data, dict) else {"result": data},
                )
            except ActionFailure as e:
                result = ActionResult(
                    action_type=action.type.value,
                    success=False,
                    index=index,
                    error=e.reason,
                    retryable=e.retryable,
                )
            except CRMError as e:
                result = ActionResult(
                    action_type=action.type.value,
                    success=False,
                    index=index,
                    error=str(e),
                    retryable=e.retryable,
                    data={"status_code": e.status_code} if e.status_code else {},
                )
            result.latency_ms = int((time.time() - start) * 1000)

            log = logger.info if result.success else logger.warning
            log(
                result.describe(),
                extra={
                    "event": "action_result",
                    "action_type": result.action_type,
                    "latency_ms": result.latency_ms,
                },
            )
            if self._emit is not None:
                await self._emit(
                    BackendLogEvent(
                        content=result.describe(),
                        data={
                            "action_type": result.action_type,
                            "index": index,
                            "success": result.success,
                            "error": result.error,
                            "data": result.data,
                        },
                    )
                )
            results.append(result)
        return results

    def _payload(self, action: ActionSpec, variables: VariableStore) -> dict[str, Any]:
        payload = dict(action.data)
        if action.value is not None:
            payload.setdefault("value", action.value)
        return variables.interpolate_payload(payload)

    def _require_crm(self, action_type: ActionType) -> CRMClient:
        if self.crm is None:
            raise ActionFailure(action_type.value, "no CRM collaborator configured")
        return self.crm

    def _require_contact(self, action_type: ActionType, variables: VariableStore) -> str:
        contact_id = variables.get("contact_id")
        if not contact_id:
            raise ActionFailure(action_type.value, "no contact_id in session variables")
        return str(contact_id)

    async def _dispatch(
        self,
        action_type: ActionType,
        payload: dict[str, Any],
        variables: VariableStore,
        session_id: str,
    ) -> Any:
        match action_type:
            case ActionType.ADD_TAG | ActionType.REMOVE_TAG:
                tag = payload.get("tag") or payload.get("value")
                if not tag:
                    raise ActionFailure(action_type.value, "missing tag")
                tags = tag if isinstance(tag, list) else [t.strip() for t in str(tag).split(",")]
                crm = self._require_crm(action_type)
                contact_id = self._require_contact(action_type, variables)
                if action_type == ActionType.ADD_TAG:
                    return await crm.add_tags(contact_id, tags)
                return await crm.remove_tags(contact_id, tags)

            case ActionType.UPDATE_CUSTOM_FIELD:
                field_key = payload.get("field") or payload.get("field_key")
                if not field_key:
                    raise ActionFailure(action_type.value, "missing field")
                crm = self._require_crm(action_type)
                contact_id = self._require_contact(action_type, variables)
                return await crm.update_custom_field(contact_id, field_key, payload.get("value"))

            case ActionType.SEND_SMS | ActionType.SEND_EMAIL:
                message = payload.get("message") or payload.get("value")
                if not message:
                    raise ActionFailure(action_type.value, "missing message")
                crm = self._require_crm(action_type)
                contact_id = self._require_contact(action_type, variables)
                channel = "SMS" if action_type == ActionType.SEND_SMS else "Email"
                return await crm.send_message(
                    contact_id, channel, message, subject=payload.get("subject")
                )

            case ActionType.SEND_WEBHOOK:
                url = payload.get("url") or payload.get("value")
                if not url:
                    raise ActionFailure(action_type.value, "missing url")
                body = dict(payload.get("payload") or {})
                body.update(
                    {
                        "session_id": session_id,
                        "contact_id": variables.get("contact_id"),
                        "session_data": variables.snapshot(),
                    }
                )
                crm = self._require_crm(action_type)
                return await crm.send_webhook(url, body)

            case ActionType.CREATE_OPPORTUNITY:
                crm = self._require_crm(action_type)
                contact_id = self._require_contact(action_type, variables)
                if not payload.get("pipeline_id"):
                    raise ActionFailure(action_type.value, "missing pipeline_id")
                return await crm.create_opportunity(
                    contact_id,
                    name=payload.get("name") or payload.get("value") or "New opportunity",
                    pipeline_id=payload["pipeline_id"],
                    stage_id=payload.get("stage_id"),
                    monetary_value=payload.get("monetary_value"),
                )

            case ActionType.CUSTOM:
                name = payload.get("handler") or payload.get("value")
                handler = self.custom_handlers.get(name) if name else None
                if handler is None:
                    raise ActionFailure(action_type.value, f"no handler registered for '{name}'")
                try:
                    return await handler(payload, variables)
                except (ActionFailure, CRMError):
                    raise
                except Exception as e:
                    raise ActionFailure(action_type.value, str(e)) from e

        raise ActionFailure(str(action_type), "unsupported action type")
