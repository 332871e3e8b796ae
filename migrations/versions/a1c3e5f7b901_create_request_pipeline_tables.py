"""create_request_pipeline_tables

Create `customer_requests`, `request_counters` and `audit_logs`.

Revision ID: a1c3e5f7b901
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c3e5f7b901"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "customer_requests" not in existing_tables:
        op.create_table(
            "customer_requests",
            sa.Column("id", sa.String(length=20), nullable=False, comment="CRA<yymmdd><nn>"),
            sa.Column("status", sa.String(length=40), nullable=False, server_default="draft"),
            sa.Column("priority", sa.String(length=10), nullable=False, server_default="normal"),
            sa.Column("client_name", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("application_vehicle", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("application_vehicle_other", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("country", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("country_other", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("created_by", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("created_by_name", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("data", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_request_status", "customer_requests", ["status"])
        op.create_index("idx_request_updated", "customer_requests", ["updated_at"])

    if "request_counters" not in existing_tables:
        op.create_table(
            "request_counters",
            sa.Column("name", sa.String(length=40), nullable=False),
            sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
            sa.PrimaryKeyConstraint("name"),
        )

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False, server_default="request"),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("actor_name", sa.String(length=255), nullable=True),
            sa.Column("actor_role", sa.String(length=20), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    op.drop_index("idx_audit_ts", table_name="audit_logs")
    op.drop_index("idx_audit_action", table_name="audit_logs")
    op.drop_index("idx_audit_actor", table_name="audit_logs")
    op.drop_index("idx_audit_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("request_counters")
    op.drop_index("idx_request_updated", table_name="customer_requests")
    op.drop_index("idx_request_status", table_name="customer_requests")
    op.drop_table("customer_requests")
