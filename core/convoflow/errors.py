"""
Error taxonomy for workflow execution.

Errors fall into two groups:
- Fatal to a turn: GraphStateError, LoopGuardExceeded. The executor turns
  these into an ``error`` event and stops the turn.
- Recovered locally: ActionFailure, EvaluationFailure. These are reported
  (``backend_log`` / non-fatal ``error`` events) and traversal continues
  or pauses at the current node.
"""

from __future__ import annotations

from typing import Any


class ConvoflowError(Exception):
    """Base class for all workflow engine errors."""


class GraphStateError(ConvoflowError):
    """The cursor references a missing node or the graph is structurally invalid."""

    def __init__(self, message: str, node_id: str | None = None, errors: list[Any] | None = None):
        super().__init__(message)
        self.node_id = node_id
        self.errors = errors or []


class ActionFailure(ConvoflowError):
    """A single action could not be completed against the CRM collaborator."""

    def __init__(self, action_type: str, reason: str, retryable: bool = False):
        super().__init__(f"{action_type}: {reason}")
        self.action_type = action_type
        self.reason = reason
        self.retryable = retryable


class EvaluationFailure(ConvoflowError):
    """The judgment or generation collaborator errored or timed out."""


class LoopGuardExceeded(ConvoflowError):
    """Too many node hops in a single turn."""

    def __init__(self, max_steps: int, last_node_id: str | None):
        super().__init__(
            f"Exceeded {max_steps} node hops in one turn (last node: {last_node_id})"
        )
        self.max_steps = max_steps
        self.last_node_id = last_node_id


class CRMError(ConvoflowError):
    """Typed failure returned by the CRM collaborator."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code in (429, 502, 503, 504)


class GraphStoreError(ConvoflowError):
    """The durable graph store could not load or save a workflow."""
