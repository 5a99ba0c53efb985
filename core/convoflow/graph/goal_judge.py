"""Goal evaluation for milestone nodes.

A milestone asks a judgment collaborator whether the conversation has
reached the node's goal. The collaborator answers with a verdict; the
executor then picks the outgoing edge:

1. a conditional edge whose label equals the selected outcome
   (or equals ``goal_achieved``/``goal_not_achieved`` for a boolean verdict)
2. the typed ``goal_achieved`` / ``goal_not_achieved`` edge
3. the ``standard`` edge, for boolean verdicts only
4. otherwise stay on the milestone and wait for the next message

Outcome labels match exactly and case-sensitively.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from convoflow.errors import EvaluationFailure
from convoflow.graph.edge import ConnectionType, EdgeSpec, WorkflowGraph
from convoflow.graph.node import NodeSpec

if TYPE_CHECKING:
    from convoflow.llm.provider import LLMProvider

logger = logging.getLogger(__name__)


class GoalStatus(StrEnum):
    ACHIEVED = "goal_achieved"
    NOT_ACHIEVED = "goal_not_achieved"
    OUTCOME = "outcome"
    INCONCLUSIVE = "inconclusive"


@dataclass
class GoalVerdict:
    """Result of a goal judgment."""

    status: GoalStatus
    outcome: str | None = None
    confidence: float | None = None  # 0-100; None means the judge did not say
    reasoning: str = ""
    suggested_response: str = ""
    extracted_data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_label(cls, label: str | None) -> GoalVerdict:
        """Build a verdict from a bare label returned by a collaborator."""
        if label is None:
            return cls(status=GoalStatus.INCONCLUSIVE)
        text = str(label).strip()
        if text in (GoalStatus.ACHIEVED, GoalStatus.NOT_ACHIEVED, GoalStatus.INCONCLUSIVE):
            return cls(status=GoalStatus(text))
        if not text:
            return cls(status=GoalStatus.INCONCLUSIVE)
        return cls(status=GoalStatus.OUTCOME, outcome=text)

    @classmethod
    def coerce(cls, result: GoalVerdict | str | None) -> GoalVerdict:
        if isinstance(result, GoalVerdict):
            return result
        return cls.from_label(result)

    def apply_threshold(self, threshold: float) -> GoalVerdict:
        """Demote a low-confidence boolean verdict to inconclusive."""
        if self.status not in (GoalStatus.ACHIEVED, GoalStatus.NOT_ACHIEVED):
            return self
        if self.confidence is None or self.confidence >= threshold:
            return self
        logger.info(
            f"Goal verdict {self.status.value} below confidence threshold "
            f"({self.confidence} < {threshold}), treating as inconclusive"
        )
        return GoalVerdict(
            status=GoalStatus.INCONCLUSIVE,
            outcome=self.outcome,
            confidence=self.confidence,
            reasoning=self.reasoning,
            suggested_response=self.suggested_response,
            extracted_data=self.extracted_data,
        )

    @property
    def label(self) -> str:
        return self.outcome or self.status.value


class GoalJudge(ABC):
    """Judgment collaborator consulted by milestone nodes."""

    @abstractmethod
    async def evaluate_goal(
        self,
        goal_description: str,
        extra_instructions: str,
        history: list[dict[str, str]],
        possible_outcomes: list[str],
    ) -> GoalVerdict | str:
        """
        Judge the conversation against the goal.

        Returns a GoalVerdict, or a bare label: one of ``possible_outcomes``,
        ``goal_achieved``, ``goal_not_achieved`` or ``inconclusive``.
        Raises EvaluationFailure when the judgment cannot be made.
        """


def resolve_goal_edge(graph: WorkflowGraph, node: NodeSpec, verdict: GoalVerdict) -> EdgeSpec | None:
    """Pick the milestone's outgoing edge for a verdict. None means stay."""
    if verdict.status == GoalStatus.INCONCLUSIVE:
        return None

    if verdict.outcome:
        edge = graph.get_conditional_edge(node.id, verdict.outcome)
        if edge is not None:
            return edge

    if verdict.status == GoalStatus.OUTCOME:
        return None

    edge = graph.get_conditional_edge(node.id, verdict.status.value)
    if edge is not None:
        return edge

    typed = (
        ConnectionType.GOAL_ACHIEVED
        if verdict.status == GoalStatus.ACHIEVED
        else ConnectionType.GOAL_NOT_ACHIEVED
    )
    edge = graph.get_typed_edge(node.id, typed)
    if edge is not None:
        return edge
    return graph.get_standard_edge(node.id)


# ---------------------------------------------------------------------------
# LLM-backed judge
# ---------------------------------------------------------------------------

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)


def _format_history(history: list[dict[str, str]]) -> str:
    parts = []
    for msg in history:
        content = (msg.get("content") or "").strip()
        if content:
            parts.append(f"[{msg.get('role', 'user').upper()}]: {content}")
    return "\n".join(parts) if parts else "(no messages)"


def parse_verdict(text: str, possible_outcomes: list[str]) -> GoalVerdict:
    """Parse the judge's JSON answer into a GoalVerdict."""
    match = _JSON_BLOCK.search(text or "")
    if not match:
        raise EvaluationFailure(f"Goal judge returned no JSON object: {text!r:.200}")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise EvaluationFailure(f"Goal judge returned invalid JSON: {e}") from e

    # Missing or unreadable confidence means the judge did not say
    confidence: float | None
    try:
        confidence = float(data["confidence"])
    except (KeyError, TypeError, ValueError):
        confidence = None
    else:
        confidence = max(0.0, min(100.0, confidence))

    outcome = data.get("selectedOutcome") or data.get("selected_outcome")
    if outcome is not None and outcome not in possible_outcomes:
        logger.debug(f"Goal judge selected unknown outcome {outcome!r}, ignoring")
        outcome = None

    achieved = data.get("achieved")
    if achieved is True:
        status = GoalStatus.ACHIEVED
    elif achieved is False:
        status = GoalStatus.NOT_ACHIEVED
    else:
        status = GoalStatus.INCONCLUSIVE

    extracted = data.get("extractedData") or data.get("extracted_data") or {}
    return GoalVerdict(
        status=status,
        outcome=outcome,
        confidence=confidence,
        reasoning=str(data.get("reasoning") or ""),
        suggested_response=str(data.get("suggestedResponse") or data.get("suggested_response") or ""),
        extracted_data=extracted if isinstance(extracted, dict) else {},
    )


class LLMGoalJudge(GoalJudge):
    """Goal judge that asks a language model for a structured JSON verdict."""

    SYSTEM_PROMPT = (
        "You are an AI assistant evaluating whether a conversation goal has been achieved. "
        "Be precise and base your judgment only on what the user actually said."
    )

    def __init__(self, llm: LLMProvider, max_tokens: int = 1000, temperature: float = 0.3):
        self._llm = llm
        self.max_tokens = max_tokens
        self.temperature = temperature

    def build_prompt(
        self,
        goal_description: str,
        extra_instructions: str,
        history: list[dict[str, str]],
        possible_outcomes: list[str],
    ) -> str:
        outcomes = "\n".join(f"{i + 1}. {o}" for i, o in enumerate(possible_outcomes)) or "(none)"
        context = f"\nADDITIONAL INSTRUCTIONS: {extra_instructions}\n" if extra_instructions else ""
        return f"""GOAL: {goal_description}

POSSIBLE OUTCOMES:
{outcomes}
{context}
CONVERSATION:
{_format_history(history)}

Analyze the conversation and the latest user message to determine:
1. Has the goal been achieved?
2. If yes, which specific outcome was reached?
3. How confident are you (0-100)?
4. Any data worth remembering (name, email, preferences, ...)

Respond with a JSON object only:
{{"achieved": true|false, "confidence": 0-100, "reasoning": "...",
  "selectedOutcome": "<one of the possible outcomes or null>",
  "suggestedResponse": "<what to say next>", "extractedData": {{}}}}"""

    async def evaluate_goal(
        self,
        goal_description: str,
        extra_instructions: str,
        history: list[dict[str, str]],
        possible_outcomes: list[str],
    ) -> GoalVerdict:
        prompt = self.build_prompt(goal_description, extra_instructions, history, possible_outcomes)
        try:
            response = await self._llm.acomplete(
                messages=[{"role": "user", "content": prompt}],
                system=self.SYSTEM_PROMPT,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                json_mode=True,
            )
        except EvaluationFailure:
            raise
        except Exception as e:
            raise EvaluationFailure(f"Goal judge call failed: {e}") from e

        verdict = parse_verdict(response.content, possible_outcomes)
        logger.info(
            f"Goal verdict: {verdict.label} (confidence={verdict.confidence})",
            extra={"event": "goal_verdict", "model": response.model},
        )
        return verdict
