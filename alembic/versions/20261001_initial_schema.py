"""Initial schema: users, catalog, payments, entitlements, anti-piracy.

Revision ID: 3f2a9c1d7b40
Revises:
Create Date: 2026-10-01
"""
from alembic import op
import sqlalchemy as sa

revision = "3f2a9c1d7b40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("trusted_user", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.Integer, nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "movies",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("poster_url", sa.String(2000), nullable=True),
        sa.Column("video_embed_url", sa.String(2000), nullable=True),
        sa.Column("is_free", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("price", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("created_at", sa.Integer, nullable=False),
    )
    op.create_index("ix_movies_title", "movies", ["title"])

    op.create_table(
        "my_list",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("movie_id", sa.String(36), sa.ForeignKey("movies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("added_at", sa.Integer, nullable=False),
        sa.UniqueConstraint("user_id", "movie_id", name="uq_my_list_user_movie"),
    )
    op.create_index("ix_my_list_user_id", "my_list", ["user_id"])

    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(50), nullable=False, unique=True),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("price", sa.Float, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("duration_days", sa.Integer, nullable=False, server_default="30"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("purpose", sa.String(20), nullable=False, server_default="subscription"),
        sa.Column("plan_id", sa.String(36), sa.ForeignKey("subscription_plans.id", ondelete="SET NULL"), nullable=True),
        sa.Column("movie_id", sa.String(36), sa.ForeignKey("movies.id", ondelete="SET NULL"), nullable=True),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_method", sa.String(20), nullable=False),
        sa.Column("transaction_ref", sa.String(100), nullable=False, unique=True),
        sa.Column("provider_txn_id", sa.String(255), nullable=True),
        sa.Column("confirmation_source", sa.String(20), nullable=True),
        sa.Column("created_at", sa.Integer, nullable=False),
        sa.Column("completed_at", sa.Integer, nullable=True),
    )
    op.create_index("ix_payment_transactions_user_id", "payment_transactions", ["user_id"])
    op.create_index("ix_payment_transactions_status", "payment_transactions", ["status"])
    op.create_index("ix_payment_transactions_user_status", "payment_transactions", ["user_id", "status"])

    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("plan_id", sa.String(36), sa.ForeignKey("subscription_plans.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("start_date", sa.Integer, nullable=False),
        sa.Column("end_date", sa.Integer, nullable=True),
        sa.Column("auto_renew", sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"])

    op.create_table(
        "video_purchases",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("movie_id", sa.String(36), sa.ForeignKey("movies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("transaction_ref", sa.String(100), nullable=False),
        sa.Column("purchased_at", sa.Integer, nullable=False),
    )
    op.create_index("ix_video_purchases_user_movie", "video_purchases", ["user_id", "movie_id"])

    op.create_table(
        "security_violations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("violation_type", sa.String(30), nullable=False),
        sa.Column("severity", sa.String(10), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("movie_id", sa.String(36), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("created_at", sa.Integer, nullable=False),
    )
    op.create_index(
        "ix_security_violations_user_type_time",
        "security_violations",
        ["user_id", "violation_type", "created_at"],
    )

    op.create_table(
        "user_bans",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("ban_type", sa.String(20), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column(
            "violation_id", sa.String(36),
            sa.ForeignKey("security_violations.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("banned_at", sa.Integer, nullable=False),
        sa.Column("expires_at", sa.Integer, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_user_bans_user_id", "user_bans", ["user_id"])

    op.create_table(
        "daily_watch_time",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("date", sa.String(10), nullable=False),
        sa.Column("total_seconds", sa.Integer, nullable=False, server_default="0"),
        sa.Column("play_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_updated", sa.Integer, nullable=False),
        sa.UniqueConstraint("user_id", "date", name="uq_daily_watch_time_user_date"),
    )


def downgrade() -> None:
    op.drop_table("daily_watch_time")
    op.drop_table("user_bans")
    op.drop_table("security_violations")
    op.drop_table("video_purchases")
    op.drop_table("user_subscriptions")
    op.drop_table("payment_transactions")
    op.drop_table("subscription_plans")
    op.drop_table("my_list")
    op.drop_table("movies")
    op.drop_table("users")
