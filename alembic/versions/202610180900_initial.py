"""initial schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
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
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("first_name", sa.String(length=50)),
        sa.Column("last_name", sa.String(length=50)),
        sa.Column("password_hash", sa.String(length=128)),
        sa.Column("password_changed_at", sa.DateTime()),
        sa.Column(
            "is_email_verified", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("login_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lock_until", sa.DateTime()),
        sa.Column("reset_token_hash", sa.String(length=64)),
        sa.Column("reset_token_expires_at", sa.DateTime()),
        sa.Column(
            "budget_alerts_enabled", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column(
            "monthly_summary_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        sa.Column(
            "weekly_check_enabled", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column(
            "daily_check_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "goal_reminders_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        *_timestamps(),
    )
    op.create_index("ix_users_reset_token_hash", "users", ["reset_token_hash"])

    op.create_table(
        "password_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("password_hash", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_password_history_user_id", "password_history", ["user_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="categorytype"), nullable=False
        ),
        sa.Column("color", sa.String(length=7), nullable=False, server_default="#607D8B"),
        sa.Column("icon", sa.String(length=50), nullable=False, server_default="category"),
        sa.Column("description", sa.String(length=500)),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "budget_allocation_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("keywords", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("level >= 0 AND level <= 4", name="ck_category_level"),
        sa.CheckConstraint(
            "budget_allocation_cents >= 0", name="ck_category_allocation"
        ),
    )
    op.create_index(
        "ix_categories_user_type_active", "categories", ["user_id", "type", "is_active"]
    )
    op.create_index("ix_categories_level_sort", "categories", ["level", "sort_order"])

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=50), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_tag_user_name"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("payee", sa.String(length=100)),
        sa.Column("payment_method", sa.String(length=50)),
        sa.Column("notes", sa.Text()),
        sa.Column("account", sa.String(length=50), nullable=False, server_default="default"),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "cancelled", name="transactionstatus"),
            nullable=False,
            server_default="completed",
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column(
            "auto_categorized", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transaction_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_category", "transactions", ["user_id", "category_id"]
    )
    op.create_index(
        "ix_transactions_user_type_date", "transactions", ["user_id", "type", "date"]
    )

    op.create_table(
        "transaction_tags",
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("alert_threshold", sa.Integer(), nullable=False, server_default="80"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount"),
        sa.CheckConstraint("end_date >= start_date", name="ck_budget_window"),
        sa.CheckConstraint(
            "alert_threshold >= 1 AND alert_threshold <= 100",
            name="ck_budget_alert_threshold",
        ),
    )
    op.create_index(
        "ix_budgets_user_window", "budgets", ["user_id", "start_date", "end_date"]
    )

    op.create_table(
        "budget_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("allocated_cents", sa.Integer(), nullable=False),
        sa.UniqueConstraint("budget_id", "category_id", name="uq_budget_allocation"),
        sa.CheckConstraint("allocated_cents >= 0", name="ck_allocation_amount"),
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=500)),
        sa.Column("target_cents", sa.Integer(), nullable=False),
        sa.Column("current_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("target_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "completed", "paused", "cancelled", name="goalstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("priority", sa.String(length=10), nullable=False, server_default="medium"),
        sa.Column(
            "reminder_frequency",
            sa.Enum("none", "daily", "weekly", "monthly", name="reminderfrequency"),
            nullable=False,
            server_default="monthly",
        ),
        sa.Column("last_reminder_sent_at", sa.DateTime()),
        sa.Column("next_reminder_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("target_cents > 0", name="ck_goal_target_positive"),
        sa.CheckConstraint("current_cents >= 0", name="ck_goal_current"),
    )
    op.create_index(
        "ix_goals_reminders",
        "goals",
        ["status", "reminder_frequency", "next_reminder_at"],
    )

    op.create_table(
        "stored_files",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("original_name", sa.String(length=255), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False, unique=True),
        sa.Column("path", sa.String(length=1024), nullable=False),
        sa.Column("url", sa.String(length=1024), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False),
        sa.Column("mime_type", sa.String(length=100), nullable=False),
        sa.Column("upload_type", sa.String(length=20), nullable=False),
        sa.Column("checksum", sa.String(length=64), nullable=False),
        sa.Column("width", sa.Integer()),
        sa.Column("height", sa.Integer()),
        sa.Column("thumbnails", sa.JSON(), nullable=False),
        sa.Column("thumbnail_paths", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_stored_files_user_type", "stored_files", ["user_id", "upload_type"]
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "kind",
            sa.Enum(
                "budget_warning",
                "budget_exceeded",
                "category_overspend",
                "monthly_summary",
                "goal_reminder",
                name="notificationkind",
            ),
            nullable=False,
        ),
        sa.Column("subject", sa.String(length=200), nullable=False),
        sa.Column("priority", sa.String(length=10), nullable=False, server_default="medium"),
        sa.Column("budget_id", sa.Integer()),
        sa.Column("category_id", sa.Integer()),
        sa.Column("goal_id", sa.Integer()),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_notifications_dedupe",
        "notifications",
        ["user_id", "kind", "budget_id", "created_at"],
    )


def downgrade():
    op.drop_index("ix_notifications_dedupe", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_stored_files_user_type", table_name="stored_files")
    op.drop_table("stored_files")
    op.drop_index("ix_goals_reminders", table_name="goals")
    op.drop_table("goals")
    op.drop_table("budget_allocations")
    op.drop_index("ix_budgets_user_window", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("transaction_tags")
    op.drop_index("ix_transactions_user_type_date", table_name="transactions")
    op.drop_index("ix_transactions_user_category", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("tags")
    op.drop_index("ix_categories_level_sort", table_name="categories")
    op.drop_index("ix_categories_user_type_active", table_name="categories")
    op.drop_table("categories")
    op.drop_index("ix_password_history_user_id", table_name="password_history")
    op.drop_table("password_history")
    op.drop_index("ix_users_reset_token_hash", table_name="users")
    op.drop_table("users")
