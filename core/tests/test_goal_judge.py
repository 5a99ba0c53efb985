"""Tests for milestone goal verdicts, edge priority and the LLM-backed judge."""

import pytest

from convoflow.errors import EvaluationFailure
from convoflow.graph.goal_judge import (
    GoalStatus,
    GoalVerdict,
    LLMGoalJudge,
    parse_verdict,
    resolve_goal_edge,
)

from conftest import FakeLLM, build_graph


def _milestone_graph(edges):
    return build_graph(
        nodes=[
            {
                "id": "m",
                "type": "milestone",
                "config": {"goal_description": "book a call", "possible_outcomes": ["yes", "no"]},
            },
            {"id": "yes_end", "type": "end"},
            {"id": "no_end", "type": "end"},
            {"id": "achieved_end", "type": "end"},
            {"id": "std_end", "type": "end"},
        ],
        edges=edges,
    )


YES = {"id": "e_yes", "source": "m", "target": "yes_end", "sourceHandle": "yes"}
NO = {"id": "e_no", "source": "m", "target": "no_end", "sourceHandle": "no"}
ACHIEVED = {"id": "e_ach", "source": "m", "target": "achieved_end", "sourceHandle": "goal_achieved"}
STANDARD = {"id": "e_std", "source": "m", "target": "std_end"}


class TestVerdictLabels:
    def test_from_label(self):
        assert GoalVerdict.from_label("goal_achieved").status == GoalStatus.ACHIEVED
        assert GoalVerdict.from_label("goal_not_achieved").status == GoalStatus.NOT_ACHIEVED
        assert GoalVerdict.from_label("inconclusive").status == GoalStatus.INCONCLUSIVE
        assert GoalVerdict.from_label(None).status == GoalStatus.INCONCLUSIVE
        assert GoalVerdict.from_label("  ").status == GoalStatus.INCONCLUSIVE

        outcome = GoalVerdict.from_label("yes")
        assert outcome.status == GoalStatus.OUTCOME
        assert outcome.outcome == "yes"
        assert outcome.label == "yes"

    def test_threshold_demotes_low_confidence(self):
        verdict = GoalVerdict(status=GoalStatus.ACHIEVED, confidence=40)
        assert verdict.apply_threshold(70).status == GoalStatus.INCONCLUSIVE
        assert GoalVerdict(status=GoalStatus.ACHIEVED, confidence=85).apply_threshold(70).status == (
            GoalStatus.ACHIEVED
        )
        assert GoalVerdict(status=GoalStatus.ACHIEVED).apply_threshold(70).status == (
            GoalStatus.ACHIEVED
        )

    def test_threshold_ignores_outcome_labels(self):
        verdict = GoalVerdict(status=GoalStatus.OUTCOME, outcome="yes", confidence=10)
        assert verdict.apply_threshold(70) is verdict


class TestEdgeResolution:
    def test_outcome_label_matches_conditional_edge(self):
        graph = _milestone_graph([YES, NO, STANDARD])
        edge = resolve_goal_edge(graph, graph.get_node("m"), GoalVerdict.from_label("yes"))
        assert edge.id == "e_yes"

    def test_outcome_labels_are_case_sensitive(self):
        graph = _milestone_graph([YES, NO])
        assert resolve_goal_edge(graph, graph.get_node("m"), GoalVerdict.from_label("Yes")) is None

    def test_unmatched_outcome_stays_even_with_standard_edge(self):
        graph = _milestone_graph([STANDARD])
        assert resolve_goal_edge(graph, graph.get_node("m"), GoalVerdict.from_label("maybe")) is None

    def test_conditional_outcome_beats_goal_edge(self):
        graph = _milestone_graph([ACHIEVED, YES])
        verdict = GoalVerdict(status=GoalStatus.ACHIEVED, outcome="yes")
        assert resolve_goal_edge(graph, graph.get_node("m"), verdict).id == "e_yes"

    def test_goal_edge_beats_standard(self):
        graph = _milestone_graph([STANDARD, ACHIEVED])
        edge = resolve_goal_edge(graph, graph.get_node("m"), GoalVerdict.from_label("goal_achieved"))
        assert edge.id == "e_ach"

    def test_boolean_verdict_falls_back_to_standard(self):
        graph = _milestone_graph([STANDARD, ACHIEVED])
        edge = resolve_goal_edge(
            graph, graph.get_node("m"), GoalVerdict.from_label("goal_not_achieved")
        )
        assert edge.id == "e_std"

    def test_inconclusive_stays(self):
        graph = _milestone_graph([YES, ACHIEVED, STANDARD])
        assert resolve_goal_edge(graph, graph.get_node("m"), GoalVerdict.from_label(None)) is None


class TestParseVerdict:
    def test_full_answer(self):
        text = """Here is my evaluation:
        {"achieved": true, "confidence": 92, "reasoning": "User agreed",
         "selectedOutcome": "yes", "suggestedResponse": "Great!",
         "extractedData": {"email": "ada@example.com"}}"""
        verdict = parse_verdict(text, ["yes", "no"])
        assert verdict.status == GoalStatus.ACHIEVED
        assert verdict.outcome == "yes"
        assert verdict.confidence == 92
        assert verdict.suggested_response == "Great!"
        assert verdict.extracted_data == {"email": "ada@example.com"}

    def test_unknown_outcome_ignored_and_confidence_clamped(self):
        verdict = parse_verdict('{"achieved": false, "confidence": 150, "selectedOutcome": "maybe"}', ["yes"])
        assert verdict.status == GoalStatus.NOT_ACHIEVED
        assert verdict.outcome is None
        assert verdict.confidence == 100

    def test_missing_achieved_is_inconclusive(self):
        assert parse_verdict('{"confidence": "n/a"}', []).status == GoalStatus.INCONCLUSIVE

    def test_missing_confidence_is_not_demoted(self):
        verdict = parse_verdict('{"achieved": true, "reasoning": "Agreed"}', [])
        assert verdict.confidence is None
        assert verdict.apply_threshold(70).status == GoalStatus.ACHIEVED
        assert parse_verdict('{"achieved": true, "confidence": "high"}', []).confidence is None

    @pytest.mark.parametrize("text", ["no json here", '{"achieved": tru'])
    def test_invalid_answers_raise(self, text):
        with pytest.raises(EvaluationFailure):
            parse_verdict(text, [])


class TestLLMGoalJudge:
    @pytest.mark.asyncio
    async def test_requests_json_and_parses(self):
        llm = FakeLLM('{"achieved": true, "confidence": 80, "selectedOutcome": "no"}')
        judge = LLMGoalJudge(llm)
        verdict = await judge.evaluate_goal(
            "book a call",
            "Be strict",
            [{"role": "user", "content": "no thanks"}],
            ["yes", "no"],
        )
        assert verdict.outcome == "no"
        request = llm.requests[0]
        assert request["json_mode"] is True
        prompt = request["messages"][0]["content"]
        assert "GOAL: book a call" in prompt
        assert "1. yes" in prompt
        assert "ADDITIONAL INSTRUCTIONS: Be strict" in prompt
        assert "[USER]: no thanks" in prompt

    @pytest.mark.asyncio
    async def test_provider_errors_become_evaluation_failure(self):
        judge = LLMGoalJudge(FakeLLM(error=RuntimeError("rate limited")))
        with pytest.raises(EvaluationFailure, match="rate limited"):
            await judge.evaluate_goal("goal", "", [], [])
