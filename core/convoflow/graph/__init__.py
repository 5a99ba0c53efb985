"""Workflow graph model, evaluation and execution."""

from convoflow.graph.actions import ActionExecutor, ActionResult
from convoflow.graph.conditions import ConditionResult, evaluate_condition
from convoflow.graph.edge import ConnectionType, EdgeSpec, GraphValidationError, WorkflowGraph
from convoflow.graph.executor import TurnResult, WorkflowExecutor
from convoflow.graph.goal_judge import GoalJudge, GoalStatus, GoalVerdict, LLMGoalJudge
from convoflow.graph.node import ActionSpec, ActionType, NodeSpec, NodeType, Position
from convoflow.graph.variables import VariableStore

__all__ = [
    # Model
    "NodeSpec",
    "NodeType",
    "ActionSpec",
    "ActionType",
    "Position",
    "EdgeSpec",
    "ConnectionType",
    "WorkflowGraph",
    "GraphValidationError",
    # State
    "VariableStore",
    # Evaluation
    "ConditionResult",
    "evaluate_condition",
    "GoalJudge",
    "GoalStatus",
    "GoalVerdict",
    "LLMGoalJudge",
    # Execution
    "ActionExecutor",
    "ActionResult",
    "WorkflowExecutor",
    "TurnResult",
]
