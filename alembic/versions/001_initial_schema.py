"""Initial IPN gateway schema: integrations, events, fingerprints, queue, health log

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "bank_integrations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("bank_code", sa.String(50), nullable=False),
        sa.Column("bank_name", sa.String(100), nullable=False),
        sa.Column("provider_type", sa.String(20), nullable=False, server_default="bank_api"),
        sa.Column("webhook_config", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("supported_currencies", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("environment", sa.String(20), nullable=False, server_default="production"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("health_status", sa.String(20), nullable=False, server_default="unknown"),
        sa.Column("last_health_check", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_bank_integrations_bank_code", "bank_integrations", ["bank_code"], unique=True)

    op.create_table(
        "institution_bank_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("institution_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "integration_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("bank_integrations.id"), nullable=False,
        ),
        sa.Column("account_reference", sa.String(100), nullable=True),
        sa.Column("account_name", sa.String(255), nullable=True),
        sa.Column("paybill_number", sa.String(20), nullable=True),
        sa.Column("till_number", sa.String(20), nullable=True),
        sa.Column("is_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_institution_bank_accounts_institution_id", "institution_bank_accounts", ["institution_id"])
    op.create_index("ix_institution_bank_accounts_integration_id", "institution_bank_accounts", ["integration_id"])

    # Append-only IPN audit trail - rows are never deleted
    op.create_table(
        "ipn_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "integration_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("bank_integrations.id"), nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="received"),
        sa.Column("event_type", sa.String(30), nullable=True),
        sa.Column("raw_payload", postgresql.JSONB, nullable=False),
        sa.Column("normalized_payload", postgresql.JSONB, nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("sender_name", sa.String(255), nullable=True),
        sa.Column("sender_phone", sa.String(32), nullable=True),
        sa.Column("sender_account", sa.String(100), nullable=True),
        sa.Column("external_reference", sa.String(100), nullable=True),
        sa.Column("bank_reference", sa.String(100), nullable=True),
        sa.Column("transaction_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("validation_errors", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("fingerprint", sa.String(64), nullable=True),
        sa.Column(
            "duplicate_of_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("ipn_events.id"), nullable=True,
        ),
        sa.Column("source_ip", sa.String(64), nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('received', 'validated', 'queued', 'processed', 'failed', 'duplicate')",
            name="ck_ipn_events_status",
        ),
        sa.CheckConstraint(
            "(normalized_payload IS NOT NULL) = (status IN ('validated', 'queued', 'processed'))",
            name="ck_ipn_events_normalized_payload",
        ),
    )
    op.create_index("ix_ipn_events_status", "ipn_events", ["status"])
    op.create_index("ix_ipn_events_integration_id", "ipn_events", ["integration_id"])
    op.create_index("ix_ipn_events_created_at", "ipn_events", ["created_at"])
    op.create_index("ix_ipn_events_external_reference", "ipn_events", ["external_reference"])
    op.create_index("ix_ipn_events_bank_reference", "ipn_events", ["bank_reference"])
    op.create_index("ix_ipn_events_fingerprint", "ipn_events", ["fingerprint"])

    # raw_payload is write-once
    op.execute("""
        CREATE OR REPLACE FUNCTION ipn_events_raw_payload_immutable() RETURNS trigger AS $$
        BEGIN
            IF NEW.raw_payload IS DISTINCT FROM OLD.raw_payload THEN
                RAISE EXCEPTION 'ipn_events.raw_payload is immutable';
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER trg_ipn_events_raw_payload_immutable
        BEFORE UPDATE ON ipn_events
        FOR EACH ROW EXECUTE FUNCTION ipn_events_raw_payload_immutable();
    """)

    # Deduplicator claims - the unique index is the atomic check-and-insert
    op.create_table(
        "ipn_fingerprints",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("fingerprint", sa.String(64), nullable=False, unique=True),
        sa.Column(
            "event_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("ipn_events.id"), nullable=False,
        ),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "ipn_processing_queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "ipn_event_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("ipn_events.id"), nullable=False,
        ),
        sa.Column("institution_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "institution_bank_account_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("institution_bank_accounts.id"), nullable=True,
        ),
        sa.Column("match_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("match_confidence", sa.Integer, nullable=False, server_default="0"),
        sa.Column("match_details", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("student_id", sa.String(64), nullable=True),
        sa.Column("invoice_id", sa.String(64), nullable=True),
        sa.Column("action_taken", sa.String(30), nullable=True),
        sa.Column("processing_notes", sa.Text, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="5"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("ipn_event_id", name="uq_ipn_queue_event"),
    )
    op.create_index("ix_ipn_queue_match_status", "ipn_processing_queue", ["match_status"])
    op.create_index("ix_ipn_queue_next_retry_at", "ipn_processing_queue", ["next_retry_at"])

    op.create_table(
        "integration_health_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "integration_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("bank_integrations.id"), nullable=False,
        ),
        sa.Column("check_type", sa.String(20), nullable=False, server_default="callback"),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("response_time_ms", sa.Integer, nullable=True),
        sa.Column("checked_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_integration_health_logs_integration_id", "integration_health_logs", ["integration_id"])
    op.create_index("ix_integration_health_logs_checked_at", "integration_health_logs", ["checked_at"])


def downgrade() -> None:
    op.drop_table("integration_health_logs")
    op.drop_table("ipn_processing_queue")
    op.drop_table("ipn_fingerprints")
    op.execute("DROP TRIGGER IF EXISTS trg_ipn_events_raw_payload_immutable ON ipn_events")
    op.execute("DROP FUNCTION IF EXISTS ipn_events_raw_payload_immutable()")
    op.drop_table("ipn_events")
    op.drop_table("institution_bank_accounts")
    op.drop_table("bank_integrations")
