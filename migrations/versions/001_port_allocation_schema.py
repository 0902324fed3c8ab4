"""Port pool, subscription references and append-only allocation log

Revision ID: 001
Revises:
Create Date: 2024-06-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Enable required PostgreSQL extensions
    op.execute("CREATE EXTENSION IF NOT EXISTS \"uuid-ossp\"")

    # Portal users and plans are owned by the portal; created here for standalone deployments
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("role", sa.String(30), nullable=False, server_default="CUSTOMER"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "plans",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Create subscriptions table
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("plan_id", postgresql.UUID(as_uuid=True)),
        sa.Column("status", sa.String(30), nullable=False, server_default="ACTIVE"),
        sa.Column("assigned_port_id", postgresql.UUID(as_uuid=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["customer_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"]),
        sa.UniqueConstraint("assigned_port_id"),
    )

    op.create_index("idx_subscriptions_status_created_at", "subscriptions", ["status", "created_at"])

    # Create ports table
    op.create_table(
        "ports",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("instance_url", sa.String(500), nullable=False),
        sa.Column("db_host", sa.String(255)),
        sa.Column("db_name", sa.String(255)),
        sa.Column("db_username", sa.String(255)),
        sa.Column("db_password", sa.String(255)),
        sa.Column("server_region", sa.String(100)),
        sa.Column("setup_instructions", sa.Text),
        sa.Column("notes", sa.Text),
        sa.Column("status", sa.String(20), nullable=False, server_default="AVAILABLE"),
        sa.Column("assigned_subscription_id", postgresql.UUID(as_uuid=True)),
        sa.Column("assigned_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["assigned_subscription_id"], ["subscriptions.id"]),
        sa.UniqueConstraint("instance_url"),
        sa.UniqueConstraint("assigned_subscription_id"),
        sa.CheckConstraint(
            "status IN ('AVAILABLE', 'RESERVED', 'ASSIGNED', 'DISABLED')",
            name="valid_port_status",
        ),
        sa.CheckConstraint(
            "(status = 'ASSIGNED') = (assigned_subscription_id IS NOT NULL)",
            name="assigned_port_has_subscription",
        ),
    )

    # Allocation scans AVAILABLE rows oldest first
    op.create_index("idx_ports_status_created_at", "ports", ["status", "created_at"])

    # Create port_allocation_logs table (no FK on port_id: history outlives the port)
    op.create_table(
        "port_allocation_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("port_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True)),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True)),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("performed_by", postgresql.UUID(as_uuid=True)),
        sa.Column("notes", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "action IN ('CREATED', 'ASSIGNED', 'REASSIGNED', 'RELEASED', 'UNASSIGNED', "
            "'DISABLED', 'ENABLED', 'RESERVED', 'MADE_AVAILABLE', 'STATUS_CHANGED')",
            name="valid_allocation_action",
        ),
    )

    op.create_index("idx_port_allocation_logs_port_id", "port_allocation_logs", ["port_id"])
    op.create_index("idx_port_allocation_logs_subscription_id", "port_allocation_logs", ["subscription_id"])
    op.create_index("idx_port_allocation_logs_customer_id", "port_allocation_logs", ["customer_id"])
    op.create_index("idx_port_allocation_logs_created_at", "port_allocation_logs", ["created_at"])

    # Audit entries are append-only at the database level too
    op.execute("""
        CREATE OR REPLACE FUNCTION refuse_port_allocation_log_change() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'port_allocation_logs is append-only';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER port_allocation_logs_append_only
        BEFORE UPDATE OR DELETE ON port_allocation_logs
        FOR EACH ROW EXECUTE FUNCTION refuse_port_allocation_log_change()
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS port_allocation_logs_append_only ON port_allocation_logs")
    op.execute("DROP FUNCTION IF EXISTS refuse_port_allocation_log_change()")

    # Drop tables in reverse order
    op.drop_table("port_allocation_logs")
    op.drop_table("ports")
    op.drop_table("subscriptions")
    op.drop_table("plans")
    op.drop_table("users")
