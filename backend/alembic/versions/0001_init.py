"""init ledger schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

NOW = sa.text("(CURRENT_TIMESTAMP)")

INDEXES: dict[str, list[str]] = {
    "users": ["id"],
    "user_credit_balance": ["user_id"],
    "teams": ["id", "owner_id"],
    "team_membership": ["id", "team_id", "user_id", "status"],
    "team_invites": ["id", "team_id", "email", "invited_by_user_id", "status", "expires_at"],
    "credit_purchases": ["id", "purchase_for", "user_id", "team_id", "product_key", "status", "provider"],
    "credit_ledger": [
        "id",
        "account_kind",
        "event_type",
        "user_id",
        "team_id",
        "membership_id",
        "actor_id",
        "source",
        "reference",
    ],
}

UNIQUE_INDEXES: dict[str, list[str]] = {
    "users": ["email"],
    "team_invites": ["token"],
    "credit_purchases": ["reference", "provider_order_id"],
}


def _inspector():
    from sqlalchemy import inspect as sa_inspect
    return sa_inspect(op.get_bind())


def upgrade() -> None:
    inspector = _inspector()
    existing_tables = set(inspector.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("email", sa.String(), nullable=False),
            sa.Column("name", sa.String(), nullable=True),
            sa.Column("password_hash", sa.String(), nullable=True),
            sa.Column("auth_provider", sa.String(), nullable=True),
            sa.Column("role", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW),
        )

    if "user_credit_balance" not in existing_tables:
        op.create_table(
            "user_credit_balance",
            sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), primary_key=True),
            sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=NOW),
            sa.CheckConstraint("balance >= 0", name="ck_user_credit_balance_non_negative"),
        )

    if "teams" not in existing_tables:
        op.create_table(
            "teams",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("owner_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("wallet", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=NOW),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("wallet >= 0", name="ck_teams_wallet_non_negative"),
        )

    if "team_membership" not in existing_tables:
        op.create_table(
            "team_membership",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("team_id", sa.String(), sa.ForeignKey("teams.id"), nullable=False),
            sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("role", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="active"),
            sa.Column("allocated", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("used", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("joined_at", sa.DateTime(timezone=True), server_default=NOW),
            sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("team_id", "user_id", name="uq_team_membership_team_user"),
            sa.CheckConstraint("used >= 0 AND used <= allocated", name="ck_team_membership_used_within_allocated"),
        )

    if "team_invites" not in existing_tables:
        op.create_table(
            "team_invites",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("team_id", sa.String(), sa.ForeignKey("teams.id"), nullable=False),
            sa.Column("email", sa.String(), nullable=False),
            sa.Column("role", sa.String(), nullable=False),
            sa.Column("invited_by_user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("token", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="pending"),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("accepted_by_user_id", sa.String(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=NOW),
            sa.UniqueConstraint("team_id", "email", name="uq_team_invites_team_email"),
        )

    if "credit_purchases" not in existing_tables:
        op.create_table(
            "credit_purchases",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("purchase_for", sa.String(), nullable=False),
            sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("team_id", sa.String(), sa.ForeignKey("teams.id"), nullable=True),
            sa.Column("product_key", sa.String(), nullable=True),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("price_usd", sa.Float(), nullable=True),
            sa.Column("status", sa.String(), nullable=False, server_default="pending"),
            sa.Column("reference", sa.String(), nullable=False),
            sa.Column("provider", sa.String(), nullable=True),
            sa.Column("provider_order_id", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        )

    if "credit_ledger" not in existing_tables:
        op.create_table(
            "credit_ledger",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("account_kind", sa.String(), nullable=False),
            sa.Column("event_type", sa.String(), nullable=False),
            sa.Column("delta", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(), nullable=True),
            sa.Column("team_id", sa.String(), nullable=True),
            sa.Column("membership_id", sa.Integer(), nullable=True),
            sa.Column("actor_id", sa.String(), nullable=True),
            sa.Column("source", sa.String(), nullable=True),
            sa.Column("reference", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW),
            sa.Column("metadata", sa.JSON(), nullable=True),
        )

    inspector = _inspector()
    for table, columns in INDEXES.items():
        idxs = {idx["name"] for idx in inspector.get_indexes(table)}
        for col in columns:
            name = f"ix_{table}_{col}"
            if name not in idxs:
                op.create_index(name, table, [col])
    for table, columns in UNIQUE_INDEXES.items():
        idxs = {idx["name"] for idx in inspector.get_indexes(table)}
        for col in columns:
            name = f"ix_{table}_{col}"
            if name not in idxs:
                op.create_index(name, table, [col], unique=True)


def downgrade() -> None:
    for table in (
        "credit_ledger",
        "credit_purchases",
        "team_invites",
        "team_membership",
        "teams",
        "user_credit_balance",
        "users",
    ):
        for col in INDEXES.get(table, []) + UNIQUE_INDEXES.get(table, []):
            op.drop_index(f"ix_{table}_{col}", table_name=table)
        op.drop_table(table)
