"""
Workflow Executor - Runs one conversation turn over a workflow graph.

Per inbound message the executor:
1. Validates the graph and resolves the session cursor (start node on the
   first turn)
2. Enters nodes one after another, emitting a ``node_execution`` event
   for each and dispatching on the node type
3. Follows the edge each node resolves until a node needs new input, an
   end node is reached, or the loop guard trips
4. Emits ``complete`` with the final variables and returns a TurnResult

The caller's SessionState is never mutated; the returned TurnResult holds
the updated copy to store for the next turn.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from convoflow.config import EngineConfig
from convoflow.crm.client import CRMClient
from convoflow.errors import CRMError, EvaluationFailure, GraphStateError, LoopGuardExceeded
from convoflow.graph.actions import ActionExecutor, ActionResult, CustomActionHandler
from convoflow.graph.conditions import evaluate_condition, resolve_condition_edge
from convoflow.graph.edge import ConnectionType, EdgeSpec, WorkflowGraph
from convoflow.graph.goal_judge import GoalJudge, GoalStatus, GoalVerdict, resolve_goal_edge
from convoflow.graph.node import NodeSpec, NodeType
from convoflow.graph.variables import VariableStore
from convoflow.llm.responder import Responder
from convoflow.observability import set_trace_context
from convoflow.runtime.event_channel import ChannelClosed, EventChannel
from convoflow.runtime.events import (
    BackendLogEvent,
    CompleteEvent,
    EngineEvent,
    ErrorEvent,
    MessageEvent,
    NodeExecutionEvent,
    VariableUpdateEvent,
)
from convoflow.schemas.session_state import ChatMessage, SessionState, SessionStatus

BOOKED_BRANCH = "booked"

DEFAULT_AI_SYSTEM_PROMPT = (
    "You are a helpful assistant in a guided conversation. "
    "Reply briefly and move the conversation forward."
)


@dataclass
class TurnResult:
    """Result of processing one inbound message."""

    session: SessionState
    events: list[EngineEvent] = field(default_factory=list)
    path: list[str] = field(default_factory=list)  # Node IDs entered this turn
    steps_executed: int = 0
    action_results: list[ActionResult] = field(default_factory=list)
    error: str | None = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.error is None and not self.cancelled

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    @property
    def current_node_id(self) -> str | None:
        return self.session.current_node_id

    @property
    def variables(self) -> dict[str, Any]:
        return self.session.variables


@dataclass
class TurnContext:
    """Mutable state of one turn. Never shared between turns or sessions."""

    graph: WorkflowGraph
    session: SessionState
    variables: VariableStore
    message: str
    channel: EventChannel | None = None
    events: list[EngineEvent] = field(default_factory=list)
    path: list[str] = field(default_factory=list)
    action_results: list[ActionResult] = field(default_factory=list)
    steps: int = 0

    async def emit(self, event: EngineEvent) -> None:
        self.events.append(event)
        if self.channel is not None:
            await self.channel.send(event)

    async def say(self, content: str, node_id: str) -> None:
        """Emit a message and record it as an assistant turn."""
        self.session.history.append(ChatMessage(role="assistant", content=content, node_id=node_id))
        await self.emit(MessageEvent(content=content, node_id=node_id))

    async def set_variable(self, name: str, value: Any) -> None:
        self.variables.set(name, value)
        await self.emit(VariableUpdateEvent(name=name, value=value))


class WorkflowExecutor:
    """
    Executes conversation workflows turn by turn.

    Example:
        executor = WorkflowExecutor(judge=LLMGoalJudge(llm), responder=LLMResponder(llm), crm=crm)

        result = await executor.run_turn(graph, session, "hello")
        store(result.session)

    One executor may serve many sessions concurrently; all per-turn state
    lives in a TurnContext.
    """

    def __init__(
        self,
        judge: GoalJudge | None = None,
        responder: Responder | None = None,
        crm: CRMClient | None = None,
        config: EngineConfig | None = None,
        custom_action_handlers: dict[str, CustomActionHandler] | None = None,
    ):
        self.judge = judge
        self.responder = responder
        self.crm = crm
        self.config = config or EngineConfig()
        self.custom_action_handlers = dict(custom_action_handlers or {})
        self.logger = logging.getLogger(__name__)

    async def run_turn(
        self,
        graph: WorkflowGraph,
        session: SessionState,
        message: str,
        channel: EventChannel | None = None,
        variables: dict[str, Any] | None = None,
    ) -> TurnResult:
        """
        Process one inbound message.

        Args:
            graph: The workflow to walk
            session: Stored session state (not mutated)
            message: The inbound user message
            channel: Optional observer channel; events are always collected
                on the result as well
            variables: Extra variables merged into the session before the turn

        Returns:
            TurnResult with the updated session copy
        """
        turn_id = uuid.uuid4().hex[:8]
        set_trace_context(
            workflow_id=graph.id or session.workflow_id,
            session_id=session.session_id,
            turn_id=turn_id,
            node_id=None,
        )

        working = session.model_copy(deep=True)
        if variables:
            working.variables.update(variables)
        if not working.workflow_id:
            working.workflow_id = graph.id
        ctx = TurnContext(
            graph=graph,
            session=working,
            variables=VariableStore(working.variables),
            message=message,
            channel=channel,
        )

        try:
            self._check_graph(graph)

            if working.status == SessionStatus.TERMINATED:
                self.logger.info("Session already terminated, ignoring message")
                await ctx.emit(
                    BackendLogEvent(
                        content="Session has ended; no further transitions",
                        data={"current_node_id": working.current_node_id},
                    )
                )
                return await self._finish(ctx)

            if working.current_node_id is None:
                start = graph.get_start_node()
                if start is None:
                    raise GraphStateError("Graph has no unique start node")
                working.current_node_id = start.id
            graph.require_node(working.current_node_id)

            if message:
                working.history.append(ChatMessage(role="user", content=message))
            working.status = SessionStatus.RUNNING
            working.turn_count += 1
            self.logger.info(
                f"🚀 Turn {working.turn_count} starting at node '{working.current_node_id}'",
                extra={"event": "turn_start"},
            )

            await self._traverse(ctx)

            if working.status == SessionStatus.RUNNING:
                working.status = SessionStatus.AWAITING_INPUT
            return await self._finish(ctx)

        except GraphStateError as e:
            self.logger.error(f"✗ Graph state error: {e}", extra={"event": "graph_state_error"})
            await self._emit_quietly(ctx, ErrorEvent(message=str(e), fatal=True, node_id=e.node_id))
            # Session left untouched
            return TurnResult(
                session=session,
                events=ctx.events,
                path=ctx.path,
                steps_executed=ctx.steps,
                action_results=ctx.action_results,
                error=str(e),
            )

        except LoopGuardExceeded as e:
            self.logger.error(f"✗ {e}", extra={"event": "loop_guard"})
            self._settle(ctx, SessionStatus.AWAITING_INPUT)
            await self._emit_quietly(
                ctx, ErrorEvent(message=str(e), fatal=True, node_id=e.last_node_id)
            )
            return self._result(ctx, error=str(e))

        except ChannelClosed:
            self.logger.info("⊘ Observer disconnected, turn cancelled", extra={"event": "turn_cancelled"})
            self._settle(ctx, SessionStatus.AWAITING_INPUT)
            return self._result(ctx, cancelled=True)

        except asyncio.CancelledError:
            if channel is not None and channel.disconnected:
                self.logger.info(
                    "⊘ Observer disconnected, turn cancelled", extra={"event": "turn_cancelled"}
                )
                self._settle(ctx, SessionStatus.AWAITING_INPUT)
                return self._result(ctx, cancelled=True)
            raise

        except Exception as e:
            reason = str(e) or type(e).__name__
            self.logger.exception(
                f"✗ Unexpected error at node '{working.current_node_id}': {reason}",
                extra={"event": "turn_failed"},
            )
            self._settle(ctx, SessionStatus.AWAITING_INPUT)
            await self._emit_quietly(
                ctx,
                ErrorEvent(
                    message=f"Unexpected error: {reason}",
                    fatal=True,
                    node_id=working.current_node_id,
                ),
            )
            return self._result(ctx, error=reason)

        finally:
            set_trace_context(node_id=None)

    # === TURN LIFECYCLE ===

    def _check_graph(self, graph: WorkflowGraph) -> None:
        fatal = [e for e in graph.validate() if e.fatal]
        if fatal:
            summary = "; ".join(e.message for e in fatal)
            raise GraphStateError(f"Graph failed validation: {summary}", errors=fatal)

    def _settle(self, ctx: TurnContext, status: SessionStatus) -> None:
        ctx.session.status = status
        ctx.session.variables = ctx.variables.snapshot()
        ctx.session.touch()

    def _result(self, ctx: TurnContext, error: str | None = None, cancelled: bool = False) -> TurnResult:
        return TurnResult(
            session=ctx.session,
            events=ctx.events,
            path=ctx.path,
            steps_executed=ctx.steps,
            action_results=ctx.action_results,
            error=error,
            cancelled=cancelled,
        )

    async def _finish(self, ctx: TurnContext) -> TurnResult:
        self._settle(ctx, ctx.session.status)
        await ctx.emit(
            CompleteEvent(
                status=ctx.session.status.value,
                current_node_id=ctx.session.current_node_id,
                variables=ctx.variables.snapshot(),
            )
        )
        self.logger.info(
            f"✓ Turn complete: {len(ctx.path)} node(s), status={ctx.session.status.value}",
            extra={"event": "turn_complete"},
        )
        return self._result(ctx)

    async def _emit_quietly(self, ctx: TurnContext, event: EngineEvent) -> None:
        try:
            await ctx.emit(event)
        except ChannelClosed:
            pass

    async def _traverse(self, ctx: TurnContext) -> None:
        """Enter nodes until one stops the turn."""
        node_id: str | None = ctx.session.current_node_id
        while node_id is not None:
            if ctx.steps >= self.config.max_steps:
                raise LoopGuardExceeded(self.config.max_steps, ctx.session.current_node_id)
            node = ctx.graph.require_node(node_id)
            ctx.steps += 1
            ctx.session.current_node_id = node.id
            ctx.path.append(node.id)
            set_trace_context(node_id=node.id)
            self.logger.info(f"▶ Step {ctx.steps}: {node.name} ({node.type.value})")

            await ctx.emit(NodeExecutionEvent(node_id=node.id, node_name=node.name))
            node_id = await self._execute_node(node, ctx)

    # === NODE DISPATCH ===

    async def _execute_node(self, node: NodeSpec, ctx: TurnContext) -> str | None:
        """Run one node. Returns the next node id, or None to stop the turn."""
        match node.type:
            case NodeType.START:
                return await self._run_start(node, ctx)
            case NodeType.MESSAGE:
                return await self._run_message(node, ctx)
            case NodeType.AI:
                return await self._run_ai(node, ctx)
            case NodeType.BOOK_APPOINTMENT:
                return await self._run_book_appointment(node, ctx)
            case NodeType.VARIABLE:
                return await self._run_variable(node, ctx)
            case NodeType.ACTION:
                await self._run_actions(node, ctx)
                return self._follow(self._standard_edge(ctx.graph, node))
            case NodeType.CONDITION:
                return await self._run_condition(node, ctx)
            case NodeType.MILESTONE:
                return await self._run_milestone(node, ctx)
            case NodeType.END:
                return await self._run_end(node, ctx)
        raise GraphStateError(f"Unsupported node type: {node.type}", node_id=node.id)

    def _standard_edge(self, graph: WorkflowGraph, node: NodeSpec) -> EdgeSpec | None:
        return graph.get_standard_edge(node.id)

    def _follow(self, edge: EdgeSpec | None) -> str | None:
        if edge is None:
            self.logger.info("   → No outgoing edge, awaiting input")
            return None
        self.logger.info(f"   → {edge.target_node_id} via {edge.connection_type.value}")
        return edge.target_node_id

    async def _run_actions(self, node: NodeSpec, ctx: TurnContext) -> None:
        if not node.actions:
            return
        executor = ActionExecutor(
            crm=self.crm, custom_handlers=self.custom_action_handlers, emit=ctx.emit
        )
        results = await executor.execute(
            node.actions, ctx.variables, session_id=ctx.session.session_id
        )
        ctx.action_results.extend(results)

    async def _run_start(self, node: NodeSpec, ctx: TurnContext) -> str | None:
        welcome = node.config.get("welcome_message") or node.config.get("message")
        if welcome and not node.config.get("skip_welcome"):
            await ctx.say(ctx.variables.interpolate(welcome), node.id)
        edge = self._standard_edge(ctx.graph, node)
        if edge is None:
            outgoing = ctx.graph.outgoing_edges(node.id)
            edge = outgoing[0] if outgoing else None
        return self._follow(edge)

    async def _run_message(self, node: NodeSpec, ctx: TurnContext) -> str | None:
        ctx.variables.set(f"response_{node.id}", ctx.message)
        text = node.config.get("message") or node.config.get("content") or node.config.get("description")
        if text:
            await ctx.say(ctx.variables.interpolate(text), node.id)
        await self._run_actions(node, ctx)
        return self._follow(self._standard_edge(ctx.graph, node))

    async def _run_ai(self, node: NodeSpec, ctx: TurnContext) -> str | None:
        config = node.config
        system_prompt = ctx.variables.interpolate(
            config.get("system_prompt") or config.get("prompt") or DEFAULT_AI_SYSTEM_PROMPT
        )
        if config.get("include_history", True):
            history = ctx.session.recent_history(self.config.history_window)
        else:
            history = [{"role": "user", "content": ctx.message}] if ctx.message else []

        try:
            if self.responder is None:
                raise EvaluationFailure("No language-generation collaborator configured")
            reply = await asyncio.wait_for(
                self.responder.generate(
                    system_prompt=system_prompt,
                    temperature=float(config.get("temperature", 0.7)),
                    max_tokens=int(config.get("max_tokens", 500)),
                    history=history,
                ),
                timeout=self.config.evaluation_timeout_seconds,
            )
        except TimeoutError:
            reason = "response generation timed out"
            await self._report_ai_failure(node, reason, ctx)
            return None
        except Exception as e:
            reason = str(e) or type(e).__name__
            await self._report_ai_failure(node, reason, ctx)
            return None

        await ctx.say(reply, node.id)
        store_as = config.get("store_in_variable")
        if store_as:
            await ctx.set_variable(store_as, reply)
        await self._run_actions(node, ctx)
        return self._follow(self._standard_edge(ctx.graph, node))

    async def _report_ai_failure(self, node: NodeSpec, reason: str, ctx: TurnContext) -> None:
        self.logger.warning(f"⚠ AI node failed: {reason}", extra={"event": "evaluation_failure"})
        await ctx.emit(
            ErrorEvent(message=f"AI response failed: {reason}", fatal=False, node_id=node.id)
        )

    async def _run_book_appointment(self, node: NodeSpec, ctx: TurnContext) -> str | None:
        config = node.config
        calendar_ids = config.get("calendar_ids") or []
        calendar_id = config.get("calendar_id") or (calendar_ids[0] if calendar_ids else None)

        await ctx.set_variable("appointment_requested", True)
        if calendar_id:
            await ctx.set_variable("appointment_calendar", calendar_id)

        booked = False
        contact_id = ctx.variables.get("contact_id")
        if self.crm is not None and calendar_id and contact_id:
            try:
                booking = await self.crm.book_appointment(
                    str(contact_id),
                    calendar_id,
                    start_time=ctx.variables.interpolate(config.get("start_time") or "") or None,
                    title=ctx.variables.interpolate(config.get("title") or "") or None,
                )
            except CRMError as e:
                await ctx.set_variable("last_booking_status", "failed")
                await ctx.emit(
                    BackendLogEvent(
                        content=f"Booking failed: {e}",
                        data={"calendar_id": calendar_id, "status_code": e.status_code},
                    )
                )
            else:
                booked = True
                appointment_id = booking.get("id") or booking.get("appointmentId")
                await ctx.set_variable("appointment_id", appointment_id)
                await ctx.set_variable("last_booking_status", "confirmed")
                await ctx.emit(
                    BackendLogEvent(
                        content="Appointment booked",
                        data={"calendar_id": calendar_id, "appointment_id": appointment_id},
                    )
                )
        else:
            await ctx.emit(
                BackendLogEvent(
                    content="Booking not attempted",
                    data={
                        "has_crm": self.crm is not None,
                        "calendar_id": calendar_id,
                        "has_contact": bool(contact_id),
                    },
                )
            )

        text = (booked and config.get("confirmation_message")) or config.get("message")
        if text:
            await ctx.say(ctx.variables.interpolate(text), node.id)

        if booked:
            await self._run_actions(node, ctx)
            edge = ctx.graph.get_conditional_edge(node.id, BOOKED_BRANCH) or ctx.graph.get_typed_edge(
                node.id, ConnectionType.GOAL_ACHIEVED
            )
            if edge is not None:
                return self._follow(edge)
        return self._follow(self._standard_edge(ctx.graph, node))

    async def _run_variable(self, node: NodeSpec, ctx: TurnContext) -> str | None:
        name = node.config.get("variable_name") or node.config.get("name")
        if name:
            value = ctx.variables.interpolate_payload(node.config.get("value", ""))
            await ctx.set_variable(name, value)
        else:
            self.logger.warning(f"⚠ Variable node '{node.id}' has no variable_name")
        await self._run_actions(node, ctx)
        return self._follow(self._standard_edge(ctx.graph, node))

    async def _run_condition(self, node: NodeSpec, ctx: TurnContext) -> str | None:
        try:
            result = evaluate_condition(node, ctx.variables)
        except ValueError as e:
            await ctx.emit(ErrorEvent(message=f"Condition error: {e}", fatal=False, node_id=node.id))
            return None

        await ctx.emit(
            BackendLogEvent(
                content=result.describe(),
                data={"branch": result.branch, "field": result.field, "operator": result.operator},
            )
        )
        return self._follow(resolve_condition_edge(ctx.graph, node, result.branch))

    async def _run_milestone(self, node: NodeSpec, ctx: TurnContext) -> str | None:
        goal = ctx.variables.interpolate(node.goal_description)
        await ctx.set_variable("user_goal", goal)

        verdict = await self._judge(node, goal, ctx)
        for key, value in verdict.extracted_data.items():
            await ctx.set_variable(key, value)

        edge = resolve_goal_edge(ctx.graph, node, verdict)
        await ctx.emit(
            BackendLogEvent(
                content=f"Milestone verdict: {verdict.label}",
                data={
                    "status": verdict.status.value,
                    "outcome": verdict.outcome,
                    "confidence": verdict.confidence,
                    "reasoning": verdict.reasoning,
                    "edge_id": edge.id if edge else None,
                },
            )
        )
        if verdict.suggested_response:
            await ctx.say(verdict.suggested_response, node.id)

        if edge is None:
            self.logger.info("   ⏸ Staying on milestone until the next message")
            return None
        await self._run_actions(node, ctx)
        return self._follow(edge)

    async def _judge(self, node: NodeSpec, goal: str, ctx: TurnContext) -> GoalVerdict:
        """Ask the judge; any failure becomes an inconclusive verdict plus a non-fatal error."""
        try:
            if self.judge is None:
                raise EvaluationFailure("No judgment collaborator configured")
            raw = await asyncio.wait_for(
                self.judge.evaluate_goal(
                    goal,
                    ctx.variables.interpolate(node.extra_instructions),
                    ctx.session.recent_history(self.config.history_window),
                    node.possible_outcomes,
                ),
                timeout=self.config.evaluation_timeout_seconds,
            )
        except TimeoutError:
            reason = "goal evaluation timed out"
        except Exception as e:
            reason = str(e) or type(e).__name__
        else:
            return GoalVerdict.coerce(raw).apply_threshold(self.config.goal_confidence_threshold)

        self.logger.warning(f"⚠ Goal evaluation failed: {reason}", extra={"event": "evaluation_failure"})
        await ctx.emit(
            ErrorEvent(message=f"Goal evaluation failed: {reason}", fatal=False, node_id=node.id)
        )
        return GoalVerdict(status=GoalStatus.INCONCLUSIVE)

    async def _run_end(self, node: NodeSpec, ctx: TurnContext) -> None:
        text = node.config.get("message") or node.config.get("ending_message")
        if text:
            await ctx.say(ctx.variables.interpolate(text), node.id)
        if node.config.get("save_history"):
            ctx.session.history_save_requested = True
            await ctx.emit(
                BackendLogEvent(
                    content="Conversation history marked for saving",
                    data={"messages": len(ctx.session.history)},
                )
            )
        ctx.session.status = SessionStatus.TERMINATED
        ctx.session.timestamps.terminated_at = datetime.now().isoformat()
        return None

