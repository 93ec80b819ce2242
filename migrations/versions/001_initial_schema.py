"""Initial schema.

Revision ID: 001
Revises: None
Create Date: 2026-10-19

Workers, tasks, offers, notified candidates, chat channels, ratings and
conversation sessions. Databases created with SQLModel's create_all are
stamped at this revision instead of running it.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "workers",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("role", sa.VARCHAR(length=8), nullable=False),
        sa.Column("full_name", sa.VARCHAR(), nullable=False),
        sa.Column("phone_number", sa.VARCHAR(), nullable=False),
        sa.Column("bank_details", sa.VARCHAR(), nullable=False),
        sa.Column("national_id", sa.VARCHAR(), nullable=False),
        sa.Column("vehicle_type", sa.VARCHAR(length=10), nullable=True),
        sa.Column("verification_status", sa.VARCHAR(length=8), nullable=False),
        sa.Column("rejection_reason", sa.VARCHAR(), nullable=True),
        sa.Column("is_available", sa.BOOLEAN(), nullable=False, server_default="1"),
        sa.Column("last_latitude", sa.FLOAT(), nullable=True),
        sa.Column("last_longitude", sa.FLOAT(), nullable=True),
        sa.Column("location_updated_at", sa.DATETIME(), nullable=True),
        sa.Column("rating_aggregate", sa.FLOAT(), nullable=False, server_default="0.0"),
        sa.Column("review_count", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.Column("updated_at", sa.DATETIME(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("phone_number"),
        sa.UniqueConstraint("national_id"),
    )
    op.create_index(
        "ix_workers_search", "workers", ["role", "verification_status", "is_available"]
    )

    op.create_table(
        "tasks",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("customer_id", sa.VARCHAR(), nullable=False),
        sa.Column("kind", sa.VARCHAR(length=8), nullable=False),
        sa.Column("status", sa.VARCHAR(length=11), nullable=False, server_default="pending"),
        sa.Column("pickup_latitude", sa.FLOAT(), nullable=True),
        sa.Column("pickup_longitude", sa.FLOAT(), nullable=True),
        sa.Column("pickup_address", sa.VARCHAR(), nullable=True),
        sa.Column("dropoff_latitude", sa.FLOAT(), nullable=True),
        sa.Column("dropoff_longitude", sa.FLOAT(), nullable=True),
        sa.Column("dropoff_address", sa.VARCHAR(), nullable=True),
        sa.Column("location_latitude", sa.FLOAT(), nullable=True),
        sa.Column("location_longitude", sa.FLOAT(), nullable=True),
        sa.Column("location_address", sa.VARCHAR(), nullable=True),
        sa.Column("instructions", sa.VARCHAR(), nullable=True),
        sa.Column("assigned_worker_id", sa.VARCHAR(), nullable=True),
        sa.Column("channel_id", sa.VARCHAR(), nullable=True),
        sa.Column("search_radius_km", sa.FLOAT(), nullable=True),
        sa.Column("candidate_count", sa.INTEGER(), nullable=True),
        sa.Column("searched_at", sa.DATETIME(), nullable=True),
        sa.Column("dispute_reason", sa.VARCHAR(), nullable=True),
        sa.Column("disputed_by", sa.VARCHAR(), nullable=True),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.Column("updated_at", sa.DATETIME(), nullable=False),
        sa.Column("expires_at", sa.DATETIME(), nullable=True),
        sa.Column("completed_at", sa.DATETIME(), nullable=True),
        sa.Column("cancelled_at", sa.DATETIME(), nullable=True),
        sa.ForeignKeyConstraint(["assigned_worker_id"], ["workers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tasks_customer_id", "tasks", ["customer_id"])
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_assigned_worker_id", "tasks", ["assigned_worker_id"])
    op.create_index("ix_tasks_expires_at", "tasks", ["expires_at"])
    op.create_index("ix_tasks_status_expires_at", "tasks", ["status", "expires_at"])
    op.create_index("ix_tasks_customer_status", "tasks", ["customer_id", "status"])

    op.create_table(
        "offers",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("task_id", sa.VARCHAR(), nullable=False),
        sa.Column("worker_id", sa.VARCHAR(), nullable=False),
        sa.Column("price", sa.INTEGER(), nullable=False),
        sa.Column("vehicle_type", sa.VARCHAR(length=10), nullable=True),
        sa.Column("status", sa.VARCHAR(length=8), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.Column("expires_at", sa.DATETIME(), nullable=True),
        sa.CheckConstraint("price > 0", name="ck_offers_price_positive"),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"]),
        sa.ForeignKeyConstraint(["worker_id"], ["workers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_offers_task_id", "offers", ["task_id"])
    op.create_index("ix_offers_worker_id", "offers", ["worker_id"])
    op.create_index("ix_offers_expires_at", "offers", ["expires_at"])
    op.create_index("ix_offers_task_status", "offers", ["task_id", "status"])
    op.create_index(
        "ux_offers_pending_worker",
        "offers",
        ["task_id", "worker_id"],
        unique=True,
        sqlite_where=sa.text("status = 'pending'"),
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "task_candidates",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("task_id", sa.VARCHAR(), nullable=False),
        sa.Column("worker_id", sa.VARCHAR(), nullable=False),
        sa.Column("distance_km", sa.FLOAT(), nullable=False),
        sa.Column("rank", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"]),
        sa.ForeignKeyConstraint(["worker_id"], ["workers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_candidates_task_id", "task_candidates", ["task_id"])
    op.create_index("ix_task_candidates_worker_id", "task_candidates", ["worker_id"])
    op.create_index(
        "ix_task_candidates_pair", "task_candidates", ["task_id", "worker_id"], unique=True
    )

    op.create_table(
        "channels",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("task_id", sa.VARCHAR(), nullable=False),
        sa.Column("customer_id", sa.VARCHAR(), nullable=False),
        sa.Column("worker_id", sa.VARCHAR(), nullable=False),
        sa.Column("external_ref", sa.VARCHAR(), nullable=True),
        sa.Column("status", sa.VARCHAR(length=9), nullable=False, server_default="open"),
        sa.Column("close_after", sa.DATETIME(), nullable=True),
        sa.Column("close_attempts", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.Column("closed_at", sa.DATETIME(), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"]),
        sa.ForeignKeyConstraint(["worker_id"], ["workers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("task_id"),
    )
    op.create_index("ix_channels_status_close_after", "channels", ["status", "close_after"])

    op.create_table(
        "ratings",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("task_id", sa.VARCHAR(), nullable=False),
        sa.Column("rater_id", sa.VARCHAR(), nullable=False),
        sa.Column("rated_id", sa.VARCHAR(), nullable=False),
        sa.Column("score", sa.INTEGER(), nullable=False),
        sa.Column("comment", sa.VARCHAR(), nullable=True),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.CheckConstraint("score BETWEEN 1 AND 5", name="ck_ratings_score_range"),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"]),
        sa.ForeignKeyConstraint(["rated_id"], ["workers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ratings_rated_id", "ratings", ["rated_id"])
    op.create_index("ix_ratings_task_rated", "ratings", ["task_id", "rated_id"], unique=True)

    op.create_table(
        "conversation_sessions",
        sa.Column("owner_id", sa.VARCHAR(), nullable=False),
        sa.Column("flow", sa.VARCHAR(), nullable=False),
        sa.Column("step", sa.VARCHAR(), nullable=False),
        sa.Column("data", sa.VARCHAR(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.Column("updated_at", sa.DATETIME(), nullable=False),
        sa.Column("expires_at", sa.DATETIME(), nullable=False),
        sa.PrimaryKeyConstraint("owner_id"),
    )
    op.create_index(
        "ix_conversation_sessions_expires_at", "conversation_sessions", ["expires_at"]
    )


def downgrade() -> None:
    op.drop_table("conversation_sessions")
    op.drop_table("ratings")
    op.drop_table("channels")
    op.drop_table("task_candidates")
    op.drop_table("offers")
    op.drop_table("tasks")
    op.drop_table("workers")
