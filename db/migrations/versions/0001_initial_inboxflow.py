"""Initial schema: tenants, credentials, raw webhook events, inbox and flow engine tables.

- tenants / whatsapp_credentials (token stored as Fernet ciphertext)
- raw_webhook_events (ingestion log, processed asynchronously)
- contacts / conversations (unique per tenant + phone)
- messages (external_message_id unique: provider-level idempotency)
- message_templates
- flows / flow_executions (outbox rows, wake_at for delay continuations)

Revision ID: 0001_initial_inboxflow
Revises:
Create Date: 2026-10-16 00:00:00.000000
"""

from __future__ import annotations
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial_inboxflow"
down_revision = None
branch_labels = None
depends_on = None


def _uuid():
    return postgresql.UUID(as_uuid=True)


def _base_columns():
    return [
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade():
    op.create_table(
        "tenants",
        *_base_columns(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="ACTIVE"),
        sa.Column("messages_per_minute", sa.Integer(), nullable=False, server_default="60"),
    )

    op.create_table(
        "whatsapp_credentials",
        *_base_columns(),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("phone_number_id", sa.String(64), nullable=False),
        sa.Column("waba_id", sa.String(64), nullable=True),
        sa.Column("display_phone_number", sa.String(32), nullable=True),
        sa.Column("access_token_ciphertext", sa.Text(), nullable=False),
        sa.Column("is_valid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("invalid_reason", sa.Text(), nullable=True),
        sa.Column("invalidated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("phone_number_id", name="uq_whatsapp_credentials_phone_number_id"),
    )
    op.create_index("ix_whatsapp_credentials_tenant_id", "whatsapp_credentials", ["tenant_id"])
    op.create_index("ix_whatsapp_credentials_waba_id", "whatsapp_credentials", ["waba_id"])

    op.create_table(
        "raw_webhook_events",
        *_base_columns(),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True),
        sa.Column("routing_key", sa.String(64), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_raw_webhook_events_status_created", "raw_webhook_events", ["status", "created_at"])

    op.create_table(
        "contacts",
        *_base_columns(),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("phone", sa.String(32), nullable=False),
        sa.Column("name", sa.String(200), nullable=True),
        sa.UniqueConstraint("tenant_id", "phone", name="uq_contacts_tenant_phone"),
    )

    op.create_table(
        "conversations",
        *_base_columns(),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("contact_id", _uuid(), sa.ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True),
        sa.Column("contact_phone", sa.String(32), nullable=False),
        sa.Column("contact_name", sa.String(200), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="OPEN"),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("tenant_id", "contact_phone", name="uq_conversations_tenant_phone"),
    )

    op.create_table(
        "messages",
        *_base_columns(),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("conversation_id", _uuid(), sa.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_message_id", sa.String(128), nullable=True),
        sa.Column("direction", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("type", sa.String(20), nullable=False, server_default="TEXT"),
        sa.Column("from_phone", sa.String(64), nullable=True),
        sa.Column("to_phone", sa.String(64), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("media_id", sa.String(128), nullable=True),
        sa.Column("media_url", sa.Text(), nullable=True),
        sa.Column("media_mime_type", sa.String(100), nullable=True),
        sa.Column("media_caption", sa.Text(), nullable=True),
        sa.Column("media_filename", sa.String(255), nullable=True),
        sa.Column("template_name", sa.String(200), nullable=True),
        sa.Column("template_language", sa.String(20), nullable=True),
        sa.Column("template_params", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("interactive", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("external_message_id", name="uq_messages_external_message_id"),
    )
    op.create_index("ix_messages_tenant_id", "messages", ["tenant_id"])
    op.create_index("ix_messages_conversation_timestamp", "messages", ["conversation_id", "timestamp"])

    op.create_table(
        "message_templates",
        *_base_columns(),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_template_id", sa.String(64), nullable=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("language", sa.String(20), nullable=False, server_default="en"),
        sa.Column("category", sa.String(40), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.UniqueConstraint("tenant_id", "name", "language", name="uq_templates_tenant_name_lang"),
    )
    op.create_index("ix_message_templates_external_template_id", "message_templates", ["external_template_id"])

    op.create_table(
        "flows",
        *_base_columns(),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_type", sa.String(30), nullable=False),
        sa.Column("trigger_keywords", sa.Text(), nullable=True),
        sa.Column("nodes", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="[]"),
        sa.Column("edges", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="[]"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("runs_count", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_flows_tenant_trigger_active", "flows", ["tenant_id", "trigger_type", "is_active"])

    op.create_table(
        "flow_executions",
        *_base_columns(),
        sa.Column("flow_id", _uuid(), sa.ForeignKey("flows.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("contact_phone", sa.String(32), nullable=False),
        sa.Column("conversation_id", _uuid(), sa.ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True),
        sa.Column("message_body", sa.Text(), nullable=True),
        sa.Column("triggered_by", sa.String(30), nullable=False),
        sa.Column("trigger_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("current_node_id", sa.String(100), nullable=True),
        sa.Column("execution_state", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("wake_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "parent_execution_id", _uuid(), sa.ForeignKey("flow_executions.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_flow_executions_flow_id", "flow_executions", ["flow_id"])
    op.create_index("ix_flow_executions_status_created", "flow_executions", ["status", "created_at"])
    # poller scan: due PENDING rows only
    op.create_index(
        "ix_flow_executions_pending_wake",
        "flow_executions",
        ["wake_at"],
        postgresql_where=sa.text("status = 'PENDING'"),
    )


def downgrade():
    op.drop_table("flow_executions")
    op.drop_table("flows")
    op.drop_table("message_templates")
    op.drop_table("messages")
    op.drop_table("conversations")
    op.drop_table("contacts")
    op.drop_table("raw_webhook_events")
    op.drop_table("whatsapp_credentials")
    op.drop_table("tenants")
