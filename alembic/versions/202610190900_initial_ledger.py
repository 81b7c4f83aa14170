"""initial ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


DECIMAL = sa.Numeric(38, 18).with_variant(sa.String(length=64), "sqlite")
BIGINT = sa.BigInteger().with_variant(sa.Integer(), "sqlite")

ACCOUNT_TYPES = ("asset", "liability", "income", "expense", "adjustment")
TRANSACTION_TYPES = ("transfer_between_accounts", "income", "expense", "adjustment")
IMPORT_SOURCES = ("privat24", "monobank", "paribas", "firefly", "revolut")


def upgrade():
    op.create_table(
        "currencies",
        sa.Column("id", sa.String(length=10), primary_key=True),
        sa.Column("rate", DECIMAL, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("decimal_places", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime()),
        sa.CheckConstraint("decimal_places >= 0", name="ck_currency_decimal_places"),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column(
            "currency", sa.String(length=10), sa.ForeignKey("currencies.id"), nullable=False
        ),
        sa.Column("type", sa.Enum(*ACCOUNT_TYPES, name="accounttype"), nullable=False),
        sa.Column("current_balance", DECIMAL, nullable=False),
        sa.Column("flags", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("extra", sa.JSON(), nullable=False),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        sa.Column("iban", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("account_number", sa.Text(), nullable=False, server_default=""),
        sa.Column("liability_percent", DECIMAL),
        sa.Column("display_order", sa.Integer()),
        sa.Column("first_transaction_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime()),
    )
    op.create_index("ix_accounts_type_flags", "accounts", ["type", "flags"])

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("color", sa.String(length=9), nullable=False, server_default=""),
        sa.Column("icon", sa.String(length=50), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime()),
    )
    op.create_index(
        "uq_tags_name_active",
        "tags",
        ["name"],
        unique=True,
        sqlite_where=sa.text("deleted_at IS NULL"),
        postgresql_where=sa.text("deleted_at IS NULL"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime()),
    )
    op.create_index(
        "uq_categories_name_active",
        "categories",
        ["name"],
        unique=True,
        sqlite_where=sa.text("deleted_at IS NULL"),
        postgresql_where=sa.text("deleted_at IS NULL"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", BIGINT, primary_key=True),
        sa.Column(
            "type", sa.Enum(*TRANSACTION_TYPES, name="transactiontype"), nullable=False
        ),
        sa.Column("source_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("destination_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("source_currency", sa.String(length=10), nullable=False, server_default=""),
        sa.Column(
            "destination_currency", sa.String(length=10), nullable=False, server_default=""
        ),
        sa.Column("source_amount", DECIMAL),
        sa.Column("destination_amount", DECIMAL),
        sa.Column("fx_source_amount", DECIMAL),
        sa.Column(
            "fx_source_currency", sa.String(length=10), nullable=False, server_default=""
        ),
        sa.Column("source_amount_in_base_currency", DECIMAL),
        sa.Column("destination_amount_in_base_currency", DECIMAL),
        sa.Column("transaction_date_time", sa.DateTime(), nullable=False),
        sa.Column("transaction_date_only", sa.Date(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False, server_default=""),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("extra", sa.JSON(), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("reference_number", sa.String(length=255)),
        sa.Column("internal_reference_number", sa.String(length=255)),
        sa.Column("flags", BIGINT, nullable=False, server_default="0"),
        sa.Column("voided_by_transaction_id", BIGINT),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime()),
    )
    op.create_index(
        "ix_transactions_date_time", "transactions", ["transaction_date_time"]
    )
    op.create_index(
        "ix_transactions_source_date",
        "transactions",
        ["source_account_id", "transaction_date_only"],
    )
    op.create_index(
        "ix_transactions_destination_date",
        "transactions",
        ["destination_account_id", "transaction_date_only"],
    )

    op.create_table(
        "transaction_tags",
        sa.Column(
            "transaction_id", BIGINT, sa.ForeignKey("transactions.id"), primary_key=True
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "double_entries",
        sa.Column("id", BIGINT, primary_key=True),
        sa.Column(
            "transaction_id", BIGINT, sa.ForeignKey("transactions.id"), nullable=False
        ),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("is_debit", sa.Boolean(), nullable=False),
        sa.Column("amount_in_base_currency", DECIMAL, nullable=False),
        sa.Column("base_currency", sa.String(length=10), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime()),
    )
    op.create_index(
        "ix_double_entries_transaction", "double_entries", ["transaction_id"]
    )
    op.create_index("ix_double_entries_account", "double_entries", ["account_id"])

    op.create_table(
        "daily_stats",
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), primary_key=True),
        sa.Column("date", sa.Date(), primary_key=True),
        sa.Column("amount", DECIMAL, nullable=False),
    )

    op.create_table(
        "monthly_stats",
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), primary_key=True),
        sa.Column("date", sa.Date(), primary_key=True),
        sa.Column("balance", DECIMAL, nullable=False),
    )

    op.create_table(
        "rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("script", sa.Text(), nullable=False),
        sa.Column(
            "interpreter_type",
            sa.Enum("lua", name="interpretertype"),
            nullable=False,
            server_default="lua",
        ),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("group_name", sa.String(length=100), nullable=False, server_default=""),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_final_rule", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime()),
    )
    op.create_index("ix_rules_group_order", "rules", ["group_name", "sort_order", "id"])

    op.create_table(
        "schedule_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("script", sa.Text(), nullable=False),
        sa.Column(
            "interpreter_type",
            postgresql.ENUM("lua", name="interpretertype", create_type=False),
            nullable=False,
            server_default="lua",
        ),
        sa.Column("cron_expression", sa.String(length=100), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("group_name", sa.String(length=100), nullable=False, server_default=""),
        sa.Column("last_run_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime()),
    )

    op.create_table(
        "import_deduplications",
        sa.Column(
            "import_source",
            sa.Enum(*IMPORT_SOURCES, name="importsource"),
            primary_key=True,
        ),
        sa.Column("key", sa.String(length=128), primary_key=True),
        sa.Column(
            "transaction_id", BIGINT, sa.ForeignKey("transactions.id"), nullable=False
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )


def downgrade():
    op.drop_table("import_deduplications")
    op.drop_table("schedule_rules")
    op.drop_index("ix_rules_group_order", table_name="rules")
    op.drop_table("rules")
    op.drop_table("monthly_stats")
    op.drop_table("daily_stats")
    op.drop_index("ix_double_entries_account", table_name="double_entries")
    op.drop_index("ix_double_entries_transaction", table_name="double_entries")
    op.drop_table("double_entries")
    op.drop_table("transaction_tags")
    op.drop_index("ix_transactions_destination_date", table_name="transactions")
    op.drop_index("ix_transactions_source_date", table_name="transactions")
    op.drop_index("ix_transactions_date_time", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("uq_categories_name_active", table_name="categories")
    op.drop_table("categories")
    op.drop_index("uq_tags_name_active", table_name="tags")
    op.drop_table("tags")
    op.drop_index("ix_accounts_type_flags", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("currencies")
    sa.Enum(name="importsource").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="interpretertype").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="transactiontype").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="accounttype").drop(op.get_bind(), checkfirst=True)
