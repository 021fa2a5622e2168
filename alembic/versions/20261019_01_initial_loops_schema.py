"""Initial Loops schema.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


account_plan = sa.Enum("STARTER", "BASIC", "PLUS", "PREMIUM", name="account_plan")
check_in_session_status = sa.Enum("ACTIVE", "COMPLETED", "EXPIRED", name="check_in_session_status")
pending_grant_status = sa.Enum("PENDING", "UNLOCKED", "EXPIRED", name="pending_grant_status")
settlement_trigger_type = sa.Enum(
    "RETURN_VISIT",
    "REWARD_REDEMPTION",
    "ANOTHER_PURCHASE",
    "RELATED_VISIT",
    name="settlement_trigger_type",
)
ledger_change_type = sa.Enum("EARN", "REDEEM", name="loops_ledger_change_type")
gift_card_status = sa.Enum("ACTIVE", "USED", "EXPIRED", name="gift_card_status")
gift_card_type = sa.Enum("DIGITAL", "PHYSICAL", name="gift_card_type")
gift_card_transaction_type = sa.Enum("CREATE", "TOPUP", "USAGE", "ISSUE", name="gift_card_transaction_type")


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False)


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("plan", account_plan, nullable=False, server_default="STARTER"),
        sa.Column("loops_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_loops_earned", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
        sa.CheckConstraint("loops_balance >= 0", name="ck_accounts_balance_non_negative"),
    )
    op.create_index("ix_accounts_phone", "accounts", ["phone"], unique=True)

    op.create_table(
        "stores",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("zone", sa.String(), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_stores_category", "stores", ["category"])

    op.create_table(
        "store_customer_blacklist",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("store_id", "account_id", name="uq_store_customer_blacklist_pair"),
    )

    op.create_table(
        "check_in_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", check_in_session_status, nullable=False, server_default="ACTIVE"),
        sa.Column("checked_in_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_check_in_sessions_account_store_status",
        "check_in_sessions",
        ["account_id", "store_id", "status"],
    )
    op.create_index(
        "ix_check_in_sessions_store_status_expiry",
        "check_in_sessions",
        ["store_id", "status", "expires_at"],
    )
    op.create_index(
        "uq_check_in_sessions_active_pair",
        "check_in_sessions",
        ["account_id", "store_id"],
        unique=True,
        sqlite_where=sa.text("status = 'ACTIVE'"),
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        "location_samples",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            sa.Integer(),
            sa.ForeignKey("check_in_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("accuracy", sa.Float(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_location_samples_session", "location_samples", ["session_id", "id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("loops_earned", sa.Integer(), nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_transactions_account_store_created",
        "transactions",
        ["account_id", "store_id", "created_at"],
    )

    op.create_table(
        "pending_grants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "session_id",
            sa.Integer(),
            sa.ForeignKey("check_in_sessions.id", ondelete="SET NULL"),
            nullable=True,
            unique=True,
        ),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("loops_original", sa.Integer(), nullable=False),
        sa.Column("loops_pending", sa.Integer(), nullable=False),
        sa.Column("civ_score", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("civ_adjusted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", pending_grant_status, nullable=False, server_default="PENDING"),
        sa.Column("unlock_trigger", settlement_trigger_type, nullable=True),
        _created_at(),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("unlocked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_pending_grants_account_status_expiry",
        "pending_grants",
        ["account_id", "status", "expires_at"],
    )
    op.create_index("ix_pending_grants_store_status", "pending_grants", ["store_id", "status"])

    op.create_table(
        "settlement_triggers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "pending_grant_id",
            sa.Integer(),
            sa.ForeignKey("pending_grants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("trigger_type", settlement_trigger_type, nullable=False),
        sa.Column("trigger_data", sa.JSON(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_settlement_triggers_pending_grant_id", "settlement_triggers", ["pending_grant_id"])

    op.create_table(
        "settlement_sweep_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("triggered_by", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("sessions_expired", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("grants_expired", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pairs_checked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("grants_unlocked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "loops_ledger",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("change_type", ledger_change_type, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("meta", sa.String(), nullable=True),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id", ondelete="SET NULL"), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_loops_ledger_account_type_created",
        "loops_ledger",
        ["account_id", "change_type", "created_at"],
    )

    op.create_table(
        "gift_cards",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(length=16), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id", ondelete="SET NULL"), nullable=True),
        sa.Column("original_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("current_balance", sa.Numeric(12, 2), nullable=False),
        sa.Column("loops_used", sa.Integer(), nullable=False),
        sa.Column("status", gift_card_status, nullable=False, server_default="ACTIVE"),
        sa.Column("card_type", gift_card_type, nullable=False, server_default="DIGITAL"),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "issued_by_store_id",
            sa.Integer(),
            sa.ForeignKey("stores.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
        sa.CheckConstraint("current_balance >= 0", name="ck_gift_cards_balance_non_negative"),
    )
    op.create_index("ix_gift_cards_code", "gift_cards", ["code"], unique=True)
    op.create_index("ix_gift_cards_account_id", "gift_cards", ["account_id"])

    op.create_table(
        "gift_card_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "gift_card_id",
            sa.Integer(),
            sa.ForeignKey("gift_cards.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("transaction_type", gift_card_transaction_type, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("payment_method", sa.String(length=16), nullable=True),
        sa.Column("loops_used", sa.Integer(), nullable=True),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id", ondelete="SET NULL"), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_gift_card_transactions_gift_card_id",
        "gift_card_transactions",
        ["gift_card_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_gift_card_transactions_gift_card_id", table_name="gift_card_transactions")
    op.drop_table("gift_card_transactions")
    op.drop_index("ix_gift_cards_account_id", table_name="gift_cards")
    op.drop_index("ix_gift_cards_code", table_name="gift_cards")
    op.drop_table("gift_cards")
    op.drop_index("ix_loops_ledger_account_type_created", table_name="loops_ledger")
    op.drop_table("loops_ledger")
    op.drop_table("settlement_sweep_runs")
    op.drop_index("ix_settlement_triggers_pending_grant_id", table_name="settlement_triggers")
    op.drop_table("settlement_triggers")
    op.drop_index("ix_pending_grants_store_status", table_name="pending_grants")
    op.drop_index("ix_pending_grants_account_status_expiry", table_name="pending_grants")
    op.drop_table("pending_grants")
    op.drop_index("ix_transactions_account_store_created", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_location_samples_session", table_name="location_samples")
    op.drop_table("location_samples")
    op.drop_index("uq_check_in_sessions_active_pair", table_name="check_in_sessions")
    op.drop_index("ix_check_in_sessions_store_status_expiry", table_name="check_in_sessions")
    op.drop_index("ix_check_in_sessions_account_store_status", table_name="check_in_sessions")
    op.drop_table("check_in_sessions")
    op.drop_table("store_customer_blacklist")
    op.drop_index("ix_stores_category", table_name="stores")
    op.drop_table("stores")
    op.drop_index("ix_accounts_phone", table_name="accounts")
    op.drop_table("accounts")

    bind = op.get_bind()
    for enum in (
        gift_card_transaction_type,
        gift_card_type,
        gift_card_status,
        ledger_change_type,
        settlement_trigger_type,
        pending_grant_status,
        check_in_session_status,
        account_plan,
    ):
        enum.drop(bind, checkfirst=True)
