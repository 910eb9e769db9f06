"""initial cash-flow schema

Revision ID: 0001
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "type",
            sa.Enum("PRIVATE", "BUSINESS", "TAX", name="accounttype"),
            nullable=False,
        ),
        sa.Column("color", sa.String(length=9)),
        sa.Column("iban", sa.String(length=34)),
        sa.Column(
            "initial_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        *_timestamps(),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])

    op.create_table(
        "income_profiles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("employee", "self_employed", name="incomeprofiletype"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=40), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_tag_user_name"),
    )

    # paid_tx_id gets its foreign key once transactions exists.
    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("profile_id", sa.Integer(), sa.ForeignKey("income_profiles.id")),
        sa.Column("customer_name", sa.String(length=240), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("service_date", sa.Date()),
        sa.Column("issued_at", sa.Date()),
        sa.Column("due_date", sa.Date()),
        sa.Column("expected_payment_date", sa.Date()),
        sa.Column(
            "status",
            sa.Enum("planned", "sent", "paid", "void", name="invoicestatus"),
            nullable=False,
        ),
        sa.Column("paid_at", sa.Date()),
        sa.Column("paid_tx_id", sa.Integer()),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_invoice_amount_positive"),
        sa.CheckConstraint(
            "(status = 'paid') = (paid_tx_id IS NOT NULL)",
            name="ck_invoice_paid_has_tx",
        ),
    )
    op.create_index(
        "ix_invoice_user_expected",
        "invoices",
        ["user_id", "status", "expected_payment_date"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("tx_date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("category", sa.String(length=120)),
        sa.Column("is_business", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "is_tax_relevant", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("from_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("transfer_group_id", sa.String(length=36)),
        sa.Column("transfer_leg", sa.Enum("OUT", "IN", name="transferleg")),
        sa.Column(
            "invoice_id",
            sa.Integer(),
            sa.ForeignKey("invoices.id", name="fk_transactions_invoice"),
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "(transfer_group_id IS NULL AND transfer_leg IS NULL)"
            " OR (transfer_group_id IS NOT NULL AND transfer_leg IS NOT NULL)",
            name="ck_transactions_transfer_leg_pairing",
        ),
    )
    op.create_index(
        "ix_transactions_user_date", "transactions", ["user_id", "tx_date"]
    )
    op.create_index(
        "ix_transactions_user_account_date",
        "transactions",
        ["user_id", "account_id", "tx_date"],
    )
    op.create_index(
        "ix_transactions_transfer_group",
        "transactions",
        ["user_id", "transfer_group_id"],
    )

    with op.batch_alter_table("invoices") as batch_op:
        batch_op.create_foreign_key(
            "fk_invoices_paid_tx", "transactions", ["paid_tx_id"], ["id"]
        )

    op.create_table(
        "transaction_tags",
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True
        ),
    )

    op.create_table(
        "recurring_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("category", sa.String(length=120)),
        sa.Column(
            "interval_type",
            sa.Enum("WEEKLY", "MONTHLY", "YEARLY", name="intervaltype"),
            nullable=False,
        ),
        sa.Column("day_of_month", sa.Integer()),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_business", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "is_tax_relevant", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "day_of_month IS NULL OR (day_of_month BETWEEN 1 AND 31)",
            name="ck_recurring_day_of_month",
        ),
        sa.CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_recurring_end_after_start",
        ),
    )
    op.create_index(
        "ix_recurring_user_start", "recurring_rules", ["user_id", "start_date"]
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category", sa.String(length=120), nullable=False),
        sa.Column("planned_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "period_type",
            sa.Enum("WEEKLY", "MONTHLY", name="periodtype"),
            nullable=False,
        ),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "planned_amount_cents > 0", name="ck_budget_planned_positive"
        ),
        sa.CheckConstraint(
            "period_end >= period_start", name="ck_budget_period_order"
        ),
    )
    op.create_index("ix_budget_user_period", "budgets", ["user_id", "period_start"])

    op.create_table(
        "salary_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "profile_id",
            sa.Integer(),
            sa.ForeignKey("income_profiles.id"),
            nullable=False,
        ),
        sa.Column("net_amount_cents", sa.Integer(), nullable=False),
        sa.Column("gross_amount_cents", sa.Integer()),
        sa.Column("payout_day", sa.Integer(), nullable=False),
        sa.Column("yearly_bonus_amount_cents", sa.Integer()),
        sa.Column("yearly_bonus_month", sa.Integer()),
        sa.Column("yearly_bonus_day", sa.Integer()),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("net_amount_cents > 0", name="ck_salary_net_positive"),
        sa.CheckConstraint(
            "payout_day BETWEEN 1 AND 31", name="ck_salary_payout_day_range"
        ),
    )
    op.create_index(
        "uq_salary_user_active",
        "salary_settings",
        ["user_id"],
        unique=True,
        sqlite_where=sa.text("is_active = 1"),
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "commission_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("profile_id", sa.Integer(), sa.ForeignKey("income_profiles.id")),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("rule_json", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "commission_rule_versions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "commission_rule_id",
            sa.Integer(),
            sa.ForeignKey("commission_rules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("valid_from", sa.Date(), nullable=False),
        sa.Column("valid_to", sa.Date()),
        sa.Column("rule_json", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "valid_to IS NULL OR valid_to > valid_from",
            name="ck_commission_version_range",
        ),
    )
    op.create_index(
        "ix_commission_version_rule_from",
        "commission_rule_versions",
        ["commission_rule_id", "valid_from"],
    )


def downgrade():
    op.drop_index(
        "ix_commission_version_rule_from", table_name="commission_rule_versions"
    )
    op.drop_table("commission_rule_versions")
    op.drop_table("commission_rules")
    op.drop_index("uq_salary_user_active", table_name="salary_settings")
    op.drop_table("salary_settings")
    op.drop_index("ix_budget_user_period", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_recurring_user_start", table_name="recurring_rules")
    op.drop_table("recurring_rules")
    op.drop_table("transaction_tags")
    with op.batch_alter_table("invoices") as batch_op:
        batch_op.drop_constraint("fk_invoices_paid_tx", type_="foreignkey")
    op.drop_index("ix_transactions_transfer_group", table_name="transactions")
    op.drop_index("ix_transactions_user_account_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_invoice_user_expected", table_name="invoices")
    op.drop_table("invoices")
    op.drop_table("tags")
    op.drop_table("income_profiles")
    op.drop_index("ix_accounts_user", table_name="accounts")
    op.drop_table("accounts")
