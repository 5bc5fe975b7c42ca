"""
Flow trigger matching.

Matching never runs a flow inline: every match becomes a PENDING
FlowExecution row written in the caller's transaction, picked up later by
the outbox poller.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from inboxflow.conversation.domain.exceptions import FlowDefinitionError
from inboxflow.conversation.domain.flow_graph import FlowGraph, decode_button_id
from inboxflow.conversation.domain.value_objects import ExecutionStatus, TriggerType
from inboxflow.conversation.infrastructure.models import FlowExecutionModel, FlowModel
from inboxflow.conversation.infrastructure.repositories import FlowExecutionRepository, FlowRepository
from inboxflow.shared.infrastructure.observability.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TriggerContext:
    tenant_id: UUID
    contact_phone: str
    conversation_id: Optional[UUID] = None
    message_id: Optional[UUID] = None
    message_body: Optional[str] = None
    message_type: Optional[str] = None
    phone_number_id: Optional[str] = None

    def as_state(self) -> dict[str, Any]:
        """Variables visible to conditions and message templates."""
        state: dict[str, Any] = {
            "contactPhone": self.contact_phone,
            "messageBody": self.message_body or "",
            "messageType": self.message_type or "",
        }
        if self.conversation_id:
            state["conversationId"] = str(self.conversation_id)
        if self.message_id:
            state["messageId"] = str(self.message_id)
        if self.phone_number_id:
            state["phoneNumberId"] = self.phone_number_id
        return state


def keyword_matches(trigger_keywords: Optional[str], body: Optional[str]) -> bool:
    """Any comma-separated keyword (trimmed, case-insensitive) occurring as a substring of the body."""
    if not trigger_keywords or not body:
        return False
    text = body.strip().lower()
    keywords = [k.strip().lower() for k in trigger_keywords.split(",")]
    return any(k and k in text for k in keywords)


class FlowTriggerMatcher:
    def __init__(self, max_retries: int = 3) -> None:
        self.max_retries = max_retries

    def _new_execution(
        self,
        flow: FlowModel,
        trigger_type: TriggerType,
        ctx: TriggerContext,
        *,
        current_node_id: Optional[str] = None,
        extra_state: Optional[dict[str, Any]] = None,
        trigger_data: Optional[dict[str, Any]] = None,
    ) -> FlowExecutionModel:
        state = ctx.as_state()
        if extra_state:
            state.update(extra_state)
        return FlowExecutionModel(
            flow_id=flow.id,
            tenant_id=ctx.tenant_id,
            contact_phone=ctx.contact_phone,
            conversation_id=ctx.conversation_id,
            message_body=ctx.message_body,
            triggered_by=trigger_type,
            trigger_data={**ctx.as_state(), **(trigger_data or {})},
            status=ExecutionStatus.PENDING,
            current_node_id=current_node_id,
            execution_state=state,
            retry_count=0,
            max_retries=self.max_retries,
        )

    async def trigger(self, session: AsyncSession, trigger_type: TriggerType, ctx: TriggerContext) -> list[FlowExecutionModel]:
        """Create one execution for every active flow of ``trigger_type`` that matches (fan-out)."""
        flows = await FlowRepository(session).list_active(ctx.tenant_id, trigger_type)
        executions = FlowExecutionRepository(session)
        created: list[FlowExecutionModel] = []
        for flow in flows:
            if trigger_type == TriggerType.KEYWORD and not keyword_matches(flow.trigger_keywords, ctx.message_body):
                continue
            created.append(executions.add(self._new_execution(flow, trigger_type, ctx)))

        if created:
            await session.flush()
            logger.info(
                "flows_triggered",
                trigger_type=trigger_type.value,
                tenant_id=str(ctx.tenant_id),
                flow_ids=[str(e.flow_id) for e in created],
            )
        return created

    async def resume_from_button(self, session: AsyncSession, ctx: TriggerContext, button_payload: str) -> Optional[FlowExecutionModel]:
        """
        Execution that resumes the flow at the node which sent the button.

        Returns None (logged) when the payload is foreign, the flow belongs to
        another tenant or no longer contains the node.
        """
        ref = decode_button_id(button_payload)
        if ref is None:
            logger.warning("button_payload_unrecognised", button_payload=button_payload)
            return None
        try:
            flow_id = UUID(ref.flow_id)
        except ValueError:
            logger.warning("button_payload_bad_flow_id", button_payload=button_payload)
            return None

        flow = await FlowRepository(session).get(flow_id)
        if flow is None or flow.tenant_id != ctx.tenant_id:
            logger.warning("button_flow_not_found", flow_id=ref.flow_id, tenant_id=str(ctx.tenant_id))
            return None
        try:
            graph = FlowGraph.parse(flow.nodes, flow.edges)
        except FlowDefinitionError as e:
            logger.warning("button_flow_definition_invalid", flow_id=ref.flow_id, error=str(e))
            return None
        if not graph.has_node(ref.node_id):
            logger.warning("button_node_not_found", flow_id=ref.flow_id, node_id=ref.node_id)
            return None

        execution = FlowExecutionRepository(session).add(
            self._new_execution(
                flow,
                TriggerType.BUTTON_CLICK,
                ctx,
                current_node_id=ref.node_id,
                extra_state={"lastButtonClick": ref.button_id},
                trigger_data={"buttonId": ref.button_id, "buttonPayload": button_payload},
            )
        )
        await session.flush()
        logger.info("button_click_execution_created", flow_id=ref.flow_id, node_id=ref.node_id, button_id=ref.button_id)
        return execution

    async def on_inbound_message(
        self,
        session: AsyncSession,
        ctx: TriggerContext,
        *,
        conversation_created: bool,
        button_payload: Optional[str] = None,
    ) -> list[FlowExecutionModel]:
        """
        Route one new inbound message.

        Replies to buttons this system issued resume their flow and nothing
        else; any other message runs the opened/new-message/keyword triggers.
        """
        if button_payload and decode_button_id(button_payload) is not None:
            resumed = await self.resume_from_button(session, ctx, button_payload)
            return [resumed] if resumed else []

        created: list[FlowExecutionModel] = []
        if conversation_created:
            created += await self.trigger(session, TriggerType.CONVERSATION_OPENED, ctx)
        created += await self.trigger(session, TriggerType.NEW_MESSAGE, ctx)
        if ctx.message_body:
            created += await self.trigger(session, TriggerType.KEYWORD, ctx)
        return created
