"""
Flow runner: executes one claimed FlowExecution.

Traversal uses an explicit work stack of (node, context) frames; contexts are
read-only mappings, so sibling branches never see each other's state. The
whole traversal runs in one transaction and outbound messages are queued for
dispatch only after it commits.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Callable, Mapping
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from inboxflow.conversation.domain.exceptions import FlowDefinitionError, FlowNotFoundError, FlowStepLimitExceeded
from inboxflow.conversation.domain.flow_graph import (
    BUTTON_TITLE_MAX,
    DEFAULT_INTERACTIVE_BODY,
    MAX_BUTTONS,
    ActionNode,
    ConditionNode,
    DelayNode,
    FlowGraph,
    MessageNode,
    encode_button_id,
)
from inboxflow.conversation.domain.value_objects import ExecutionStatus
from inboxflow.conversation.infrastructure.evaluators import evaluate_condition, render_template
from inboxflow.conversation.infrastructure.models import FlowExecutionModel, FlowModel
from inboxflow.conversation.infrastructure.repositories import FlowExecutionRepository, FlowRepository
from inboxflow.messaging.domain.value_objects import MessageDirection, MessageStatus, MessageType
from inboxflow.messaging.infrastructure.models import MessageModel
from inboxflow.messaging.infrastructure.repositories.conversation_repository import ConversationRepository
from inboxflow.messaging.infrastructure.repositories.message_repository import MessageRepository
from inboxflow.shared.infrastructure.database.base_model import utcnow
from inboxflow.shared.infrastructure.database.session import DatabaseSessionFactory
from inboxflow.shared.infrastructure.messaging.event_bus import MESSAGE_NEW, EventBus, RealtimeEvent
from inboxflow.shared.infrastructure.observability.logger import get_logger
from inboxflow.shared.infrastructure.queue.job_queue import JobQueue, send_job_id

logger = get_logger(__name__)


class _ClaimLost(Exception):
    """Raised inside the run transaction so its writes roll back."""


@dataclass(frozen=True)
class _Frame:
    node_id: str
    context: Mapping[str, Any]
    # resume point: the node's side effect already happened in an earlier run
    resumed: bool = False


@dataclass
class _RunOutcome:
    state: dict[str, Any]
    messages: list[MessageModel] = field(default_factory=list)
    continuations: list[FlowExecutionModel] = field(default_factory=list)
    steps: int = 0


def condition_scope(context: Mapping[str, Any]) -> dict[str, Any]:
    scope = dict(context)
    scope.setdefault("buttonClick", context.get("lastButtonClick", ""))
    return scope


def build_interactive(flow_id: Any, node: MessageNode, body: str) -> dict[str, Any]:
    return {
        "type": "button",
        "body": {"text": body or DEFAULT_INTERACTIVE_BODY},
        "action": {
            "buttons": [
                {
                    "type": "reply",
                    "reply": {
                        "id": encode_button_id(flow_id, node.id, button.id),
                        "title": button.label[:BUTTON_TITLE_MAX],
                    },
                }
                for button in node.buttons[:MAX_BUTTONS]
            ]
        },
    }


class FlowRunner:
    def __init__(
        self,
        sessions: DatabaseSessionFactory,
        bus: EventBus,
        send_queue: JobQueue,
        *,
        max_steps: int = 100,
        delay_min_ms: int = 1_000,
        delay_max_ms: int = 300_000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.bus = bus
        self.send_queue = send_queue
        self.max_steps = max_steps
        self.delay_min_ms = delay_min_ms
        self.delay_max_ms = delay_max_ms
        self.clock = clock

    def clamp_delay(self, millis: int) -> int:
        return max(self.delay_min_ms, min(self.delay_max_ms, millis))

    async def run(self, execution_id: UUID) -> ExecutionStatus:
        """
        Run a claimed (PROCESSING) execution to completion.

        Definition errors fail the execution without retry; anything else
        bumps ``retry_count`` and returns it to PENDING until ``max_retries``.
        """
        try:
            async with self.sessions.transaction() as session:
                executions = FlowExecutionRepository(session)
                execution = await executions.get(execution_id)
                if execution is None:
                    logger.warning("flow_execution_missing", execution_id=str(execution_id))
                    return ExecutionStatus.FAILED
                if execution.status != ExecutionStatus.PROCESSING:
                    logger.info("flow_execution_not_claimed", execution_id=str(execution_id), status=execution.status.value)
                    return execution.status

                flows = FlowRepository(session)
                flow = await flows.get(execution.flow_id)
                if flow is None:
                    raise FlowNotFoundError(f"Flow {execution.flow_id} not found")
                graph = FlowGraph.parse(flow.nodes, flow.edges)

                outcome = await self._traverse(session, flow, graph, execution)
                if not await executions.mark_completed(execution.id, outcome.state):
                    raise _ClaimLost()
                if execution.parent_execution_id is None:
                    await flows.increment_runs(flow.id)
                tenant_id = execution.tenant_id
                flow_id = flow.id
        except _ClaimLost:
            return await self._claim_lost(execution_id)
        except (FlowDefinitionError, FlowNotFoundError) as e:
            return await self._record_failure(execution_id, e, retry=False)
        except Exception as e:
            return await self._record_failure(execution_id, e, retry=True)

        for message in outcome.messages:
            await self.send_queue.enqueue(send_job_id(message.id), {"message_id": str(message.id)})
        await self.bus.publish_many(
            [
                RealtimeEvent(
                    MESSAGE_NEW,
                    tenant_id,
                    {
                        "messageId": str(m.id),
                        "conversationId": str(m.conversation_id),
                        "direction": MessageDirection.OUTBOUND.value,
                        "type": m.type.value,
                        "content": m.content,
                        "status": MessageStatus.PENDING.value,
                        "flowId": str(flow_id),
                    },
                )
                for m in outcome.messages
            ]
        )
        logger.info(
            "flow_execution_completed",
            execution_id=str(execution_id),
            flow_id=str(flow_id),
            steps=outcome.steps,
            messages=len(outcome.messages),
            continuations=len(outcome.continuations),
        )
        return ExecutionStatus.COMPLETED

    async def _claim_lost(self, execution_id: UUID) -> ExecutionStatus:
        async with self.sessions.session() as session:
            execution = await FlowExecutionRepository(session).get(execution_id)
            status = execution.status if execution is not None else ExecutionStatus.FAILED
        logger.warning("flow_execution_claim_lost", execution_id=str(execution_id), status=status.value)
        return status

    async def _record_failure(self, execution_id: UUID, error: Exception, *, retry: bool) -> ExecutionStatus:
        async with self.sessions.transaction() as session:
            status = await FlowExecutionRepository(session).record_failure(
                execution_id, f"{type(error).__name__}: {error}", retry=retry,
            )
        logger.warning(
            "flow_execution_failed",
            execution_id=str(execution_id),
            error=str(error),
            retry=retry,
            status=status.value,
            exc_info=retry,
        )
        return status

    async def _traverse(
        self, session: AsyncSession, flow: FlowModel, graph: FlowGraph, execution: FlowExecutionModel,
    ) -> _RunOutcome:
        state = dict(execution.execution_state or {})
        outcome = _RunOutcome(state=state)
        entry = execution.current_node_id or graph.start_id
        stack = [_Frame(entry, MappingProxyType(state), resumed=execution.current_node_id is not None)]

        while stack:
            frame = stack.pop()
            outcome.steps += 1
            if outcome.steps > self.max_steps:
                raise FlowStepLimitExceeded(f"Flow {flow.id} exceeded {self.max_steps} steps; check for cycles")

            node = graph.node(frame.node_id)
            if isinstance(node, ConditionNode):
                result = evaluate_condition(node.field, node.operator, node.value, condition_scope(frame.context))
                logger.debug("flow_condition_evaluated", node_id=node.id, result=result)
                edges = graph.branch(node.id, result)
            elif isinstance(node, DelayNode) and not frame.resumed:
                outcome.continuations.append(self._schedule_continuation(session, execution, node, frame.context))
                continue
            else:
                if isinstance(node, MessageNode) and not frame.resumed:
                    outcome.messages.append(await self._send_message(session, flow, execution, node, frame.context))
                    if node.buttons:
                        # branch waits for the button reply; the resume execution follows the edges
                        continue
                elif isinstance(node, ActionNode):
                    logger.info("flow_action_skipped", node_id=node.id, kind=node.kind)
                edges = graph.outgoing(node.id)

            # reversed so the first edge is visited first
            for edge in reversed(edges):
                stack.append(_Frame(edge.target, frame.context))

        return outcome

    async def _send_message(
        self,
        session: AsyncSession,
        flow: FlowModel,
        execution: FlowExecutionModel,
        node: MessageNode,
        context: Mapping[str, Any],
    ) -> MessageModel:
        body = render_template(node.content, context)
        conversations = ConversationRepository(session)
        conversation = await conversations.get(execution.conversation_id) if execution.conversation_id else None
        if conversation is None:
            conversation = await conversations.get_or_create_for_outbound(execution.tenant_id, execution.contact_phone)

        now = self.clock()
        message = MessageModel(
            tenant_id=execution.tenant_id,
            conversation_id=conversation.id,
            direction=MessageDirection.OUTBOUND,
            status=MessageStatus.PENDING,
            from_phone=context.get("phoneNumberId"),
            to_phone=execution.contact_phone,
            timestamp=now,
        )
        if node.buttons:
            message.type = MessageType.INTERACTIVE
            message.content = body or DEFAULT_INTERACTIVE_BODY
            message.interactive = build_interactive(flow.id, node, body)
        elif node.media_url:
            message.type = MessageType.IMAGE
            message.media_url = render_template(node.media_url, context)
            message.media_caption = body or None
            message.content = body or None
        elif body:
            message.type = MessageType.TEXT
            message.content = body
        else:
            raise FlowDefinitionError(f"Message node '{node.id}' has no content")

        MessageRepository(session).add(message)
        await session.flush()
        await conversations.touch(conversation.id, now)
        logger.info("flow_message_created", node_id=node.id, message_id=str(message.id), type=message.type.value)
        return message

    def _schedule_continuation(
        self,
        session: AsyncSession,
        execution: FlowExecutionModel,
        node: DelayNode,
        context: Mapping[str, Any],
    ) -> FlowExecutionModel:
        delay_ms = self.clamp_delay(node.millis)
        continuation = FlowExecutionRepository(session).add(
            FlowExecutionModel(
                flow_id=execution.flow_id,
                tenant_id=execution.tenant_id,
                contact_phone=execution.contact_phone,
                conversation_id=execution.conversation_id,
                message_body=execution.message_body,
                triggered_by=execution.triggered_by,
                trigger_data=dict(execution.trigger_data or {}),
                status=ExecutionStatus.PENDING,
                current_node_id=node.id,
                execution_state=dict(context),
                retry_count=0,
                max_retries=execution.max_retries,
                wake_at=self.clock() + timedelta(milliseconds=delay_ms),
                parent_execution_id=execution.id,
            )
        )
        logger.info("flow_delay_scheduled", node_id=node.id, delay_ms=delay_ms, execution_id=str(execution.id))
        return continuation
