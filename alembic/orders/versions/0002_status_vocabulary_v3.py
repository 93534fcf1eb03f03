"""upgrade stored status labels to vocabulary v3

Revision ID: 0002_status_vocabulary_v3
Revises: 0001_orders
Create Date: 2026-10-05

Rewrites v1 (upper-case keys) and v2 (long concierge labels, per-gateway
failure labels) in one pass. Must run before the append-only trigger.
"""

from alembic import op
import sqlalchemy as sa

from shopflow.common.state_machine import legacy_label_map


revision = "0002_status_vocabulary_v3"
down_revision = "0001_orders"
branch_labels = None
depends_on = None


order_statuses = sa.table("order_statuses", sa.column("status", sa.String()))


def upgrade() -> None:
    for legacy, canonical in legacy_label_map().items():
        op.execute(
            order_statuses.update()
            .where(order_statuses.c.status == legacy)
            .values(status=canonical.value)
        )


def downgrade() -> None:
    # Several legacy labels collapse into one canonical label; there is no
    # unique inverse to restore.
    pass
