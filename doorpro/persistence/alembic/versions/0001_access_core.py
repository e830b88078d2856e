"""access core: tokens, audit logs, usage metrics

Revision ID: 0001_access_core
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_access_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="free"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)

    op.create_table(
        "auth_tokens",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("identity_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        # SHA-256 hex digest only; raw tokens never reach the database.
        sa.Column("token_hash", sa.String(), nullable=False),
        sa.Column("token_type", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("issued_from_ip", sa.String(), nullable=True),
        sa.Column("issued_from_agent", sa.String(), nullable=True),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_auth_tokens_token_hash", "auth_tokens", ["token_hash"], unique=True)
    op.create_index("ix_auth_tokens_identity_id", "auth_tokens", ["identity_id"])
    op.create_index("ix_auth_tokens_identity_type", "auth_tokens", ["identity_id", "token_type"])
    # Supports the sweep predicate (revoked = false AND expires_at < cutoff).
    op.create_index("ix_auth_tokens_sweep", "auth_tokens", ["revoked", "expires_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("identity_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("resource", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_audit_logs_identity_id", "audit_logs", ["identity_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_timestamp", "audit_logs", ["timestamp"])
    op.create_index("ix_audit_logs_identity_timestamp", "audit_logs", ["identity_id", "timestamp"])

    op.create_table(
        "usage_metrics",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("identity_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("metric_type", sa.String(), nullable=False),
        sa.Column("metric_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # Concurrent first writers of a period converge on one row.
        sa.UniqueConstraint(
            "identity_id",
            "metric_type",
            "period_start",
            "period_end",
            name="uq_usage_metrics_period",
        ),
    )
    op.create_index("ix_usage_metrics_identity_id", "usage_metrics", ["identity_id"])


def downgrade() -> None:
    op.drop_index("ix_usage_metrics_identity_id", table_name="usage_metrics")
    op.drop_table("usage_metrics")

    op.drop_index("ix_audit_logs_identity_timestamp", table_name="audit_logs")
    op.drop_index("ix_audit_logs_timestamp", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_identity_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_auth_tokens_sweep", table_name="auth_tokens")
    op.drop_index("ix_auth_tokens_identity_type", table_name="auth_tokens")
    op.drop_index("ix_auth_tokens_identity_id", table_name="auth_tokens")
    op.drop_index("ix_auth_tokens_token_hash", table_name="auth_tokens")
    op.drop_table("auth_tokens")

    op.drop_index("ix_users_username", table_name="users")
    op.drop_table("users")
