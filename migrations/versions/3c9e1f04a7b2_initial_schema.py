"""initial schema

Revision ID: 3c9e1f04a7b2
Revises:
Create Date: 2026-10-18 09:12:40.511832

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3c9e1f04a7b2"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _identity_fk() -> sa.Column:
    return sa.Column(
        "local_identity_id",
        sa.Integer(),
        sa.ForeignKey("local_identities.id", ondelete="CASCADE"),
        nullable=False,
    )


def _queue_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("partition_key", sa.Integer(), nullable=False, server_default="0"),
        _identity_fk(),
        sa.Column("activity", sa.JSON(), nullable=False),
    ]


def _lifecycle_columns() -> list[sa.Column]:
    return [
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("last_attempted_at", nullable=True),
        _timestamp("next_attempt_at", nullable=True),
        _timestamp("lease_expires_at", nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
    ]


def upgrade() -> None:
    """Create the federation tables."""
    op.create_table(
        "local_identities",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("handle", sa.String(64), nullable=False, unique=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("actor_url", sa.Text(), nullable=False, unique=True),
        sa.Column("inbox_url", sa.Text(), nullable=False),
        sa.Column("outbox_url", sa.Text(), nullable=False),
        sa.Column("followers_url", sa.Text(), nullable=False),
        sa.Column("private_key_pem", sa.Text(), nullable=True),
        sa.Column("public_key_pem", sa.Text(), nullable=True),
        sa.Column("follower_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("moved_to", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_local_identities_owner_id", "local_identities", ["owner_id"])

    for table_name, remote_column, default_status in (
        ("inbound_follows", "follower_actor_url", "accepted"),
        ("outgoing_follows", "remote_actor_url", "pending"),
    ):
        columns = [
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            _identity_fk(),
            sa.Column(remote_column, sa.Text(), nullable=False),
            sa.Column("follow_activity_id", sa.Text(), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default=default_status),
            _timestamp("created_at"),
        ]
        if table_name == "outgoing_follows":
            columns.append(_timestamp("updated_at"))
        constraint = "uq_inbound_follow_pair" if table_name == "inbound_follows" else (
            "uq_outgoing_follow_pair"
        )
        op.create_table(
            table_name,
            *columns,
            sa.UniqueConstraint("local_identity_id", remote_column, name=constraint),
        )

    op.create_table(
        "activities",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("activity_id", sa.Text(), nullable=False, unique=True),
        _identity_fk(),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("actor", sa.Text(), nullable=False),
        sa.Column("object_id", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        _timestamp("published_at"),
    )

    op.create_table(
        "inbox_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "recipient_id",
            sa.Integer(),
            sa.ForeignKey("local_identities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sender_actor_url", sa.Text(), nullable=False),
        sa.Column("activity_id", sa.Text(), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("activity", sa.JSON(), nullable=False),
        sa.Column("content", sa.JSON(), nullable=True),
        _timestamp("received_at"),
        sa.UniqueConstraint("recipient_id", "activity_id", name="uq_inbox_item_activity"),
    )
    op.create_index("ix_inbox_items_recipient_id", "inbox_items", ["recipient_id"])

    op.create_table(
        "delivery_queue",
        *_queue_columns(),
        sa.Column("target_actor_url", sa.Text(), nullable=False),
        sa.Column("target_inbox", sa.Text(), nullable=True),
        *_lifecycle_columns(),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_delivery_queue_claim",
        "delivery_queue",
        ["status", "partition_key", "next_attempt_at"],
    )

    op.create_table(
        "follower_batches",
        *_queue_columns(),
        sa.Column("follower_urls", sa.JSON(), nullable=False),
        *_lifecycle_columns(),
        sa.Column("delivered_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_follower_batches_claim",
        "follower_batches",
        ["status", "partition_key", "next_attempt_at"],
    )

    op.create_table(
        "remote_actor_cache",
        sa.Column("actor_url", sa.Text(), primary_key=True),
        sa.Column("document", sa.JSON(), nullable=False),
        sa.Column("inbox_url", sa.Text(), nullable=False),
        sa.Column("shared_inbox_url", sa.Text(), nullable=True),
        sa.Column("public_key_pem", sa.Text(), nullable=True),
        sa.Column("key_id", sa.Text(), nullable=True),
        sa.Column("preferred_username", sa.Text(), nullable=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        _timestamp("fetched_at"),
        _timestamp("expires_at"),
        sa.Column("hit_count", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_remote_actor_cache_key_id", "remote_actor_cache", ["key_id"])

    op.create_table(
        "blocked_domains",
        sa.Column("host", sa.String(255), primary_key=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="blocked"),
        sa.Column("reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )

    op.create_table(
        "request_metrics",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("remote_host", sa.String(255), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("latency_ms", sa.Float(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        _timestamp("recorded_at"),
    )
    op.create_index("ix_request_metrics_remote_host", "request_metrics", ["remote_host"])
    op.create_index("ix_request_metrics_recorded_at", "request_metrics", ["recorded_at"])


def downgrade() -> None:
    """Drop the federation tables."""
    op.drop_index("ix_request_metrics_recorded_at", table_name="request_metrics")
    op.drop_index("ix_request_metrics_remote_host", table_name="request_metrics")
    op.drop_table("request_metrics")
    op.drop_table("blocked_domains")
    op.drop_index("ix_remote_actor_cache_key_id", table_name="remote_actor_cache")
    op.drop_table("remote_actor_cache")
    op.drop_index("ix_follower_batches_claim", table_name="follower_batches")
    op.drop_table("follower_batches")
    op.drop_index("ix_delivery_queue_claim", table_name="delivery_queue")
    op.drop_table("delivery_queue")
    op.drop_index("ix_inbox_items_recipient_id", table_name="inbox_items")
    op.drop_table("inbox_items")
    op.drop_table("activities")
    op.drop_table("outgoing_follows")
    op.drop_table("inbound_follows")
    op.drop_index("ix_local_identities_owner_id", table_name="local_identities")
    op.drop_table("local_identities")
