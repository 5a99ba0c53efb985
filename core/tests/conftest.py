"""Shared fakes for the engine's external collaborators."""

from typing import Any

import pytest

from convoflow.errors import CRMError
from convoflow.graph.edge import WorkflowGraph
from convoflow.graph.goal_judge import GoalJudge, GoalVerdict
from convoflow.llm.provider import LLMProvider, LLMResponse
from convoflow.llm.responder import Responder
from convoflow.observability import clear_trace_context


class FakeJudge(GoalJudge):
    """Returns queued verdicts in order; repeats the last one."""

    def __init__(self, *verdicts: GoalVerdict | str | Exception):
        self.verdicts = list(verdicts) or ["inconclusive"]
        self.calls: list[dict[str, Any]] = []

    async def evaluate_goal(self, goal_description, extra_instructions, history, possible_outcomes):
        self.calls.append(
            {
                "goal_description": goal_description,
                "extra_instructions": extra_instructions,
                "history": history,
                "possible_outcomes": possible_outcomes,
            }
        )
        index = min(len(self.calls) - 1, len(self.verdicts) - 1)
        verdict = self.verdicts[index]
        if isinstance(verdict, Exception):
            raise verdict
        return verdict


class FakeResponder(Responder):
    def __init__(self, reply: str | Exception = "Sure, happy to help."):
        self.reply = reply
        self.calls: list[dict[str, Any]] = []

    async def generate(self, system_prompt, temperature, max_tokens, history=None):
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "history": history,
            }
        )
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


class FakeCRM:
    """Records every call. Methods named in ``failing`` raise CRMError."""

    def __init__(self, failing: dict[str, int] | None = None):
        self.failing = failing or {}
        self.calls: list[tuple[str, tuple, dict]] = []

    def _record(self, name: str, *args: Any, **kwargs: Any) -> dict[str, Any]:
        self.calls.append((name, args, kwargs))
        if name in self.failing:
            raise CRMError(f"{name} rejected", self.failing[name])
        return {"ok": True, "method": name}

    def called(self, name: str) -> list[tuple[tuple, dict]]:
        return [(args, kwargs) for n, args, kwargs in self.calls if n == name]

    async def add_tags(self, contact_id, tags):
        return self._record("add_tags", contact_id, tags)

    async def remove_tags(self, contact_id, tags):
        return self._record("remove_tags", contact_id, tags)

    async def update_custom_field(self, contact_id, field_key, value):
        return self._record("update_custom_field", contact_id, field_key, value)

    async def send_message(self, contact_id, channel, message, subject=None):
        return self._record("send_message", contact_id, channel, message, subject=subject)

    async def send_webhook(self, url, payload):
        return self._record("send_webhook", url, payload)

    async def create_opportunity(
        self, contact_id, name, pipeline_id, stage_id=None, monetary_value=None
    ):
        return self._record(
            "create_opportunity",
            contact_id,
            name,
            pipeline_id,
            stage_id=stage_id,
            monetary_value=monetary_value,
        )

    async def book_appointment(self, contact_id, calendar_id, start_time=None, title=None):
        result = self._record(
            "book_appointment", contact_id, calendar_id, start_time=start_time, title=title
        )
        return {**result, "id": "appt_1"}


class FakeLLM(LLMProvider):
    """LLMProvider returning canned content; records the last request."""

    def __init__(self, content: str = "", error: Exception | None = None):
        self.content = content
        self.error = error
        self.requests: list[dict[str, Any]] = []

    def complete(self, messages, system="", max_tokens=1024, temperature=None, json_mode=False):
        self.requests.append(
            {
                "messages": messages,
                "system": system,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "json_mode": json_mode,
            }
        )
        if self.error is not None:
            raise self.error
        return LLMResponse(content=self.content, model="fake-model")


def build_graph(nodes: list[dict], edges: list[dict] | None = None, workflow_id: str = "wf_test"):
    """Build a WorkflowGraph from editor-style dicts."""
    return WorkflowGraph.model_validate({"id": workflow_id, "nodes": nodes, "edges": edges or []})


@pytest.fixture(autouse=True)
def _reset_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def fake_crm() -> FakeCRM:
    return FakeCRM()


@pytest.fixture
def graph_factory():
    return build_graph
