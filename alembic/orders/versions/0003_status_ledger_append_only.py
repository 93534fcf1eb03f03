"""make the order status ledger append-only

Revision ID: 0003_status_ledger_append_only
Revises: 0002_status_vocabulary_v3
Create Date: 2026-10-06
"""

from alembic import op


revision = "0003_status_ledger_append_only"
down_revision = "0002_status_vocabulary_v3"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # The only permitted UPDATE retires the current record: is_current goes
    # true -> false and every other column stays as inserted.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_order_status_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF TG_OP = 'UPDATE'
               AND OLD.is_current AND NOT NEW.is_current
               AND (to_jsonb(NEW) - 'is_current') = (to_jsonb(OLD) - 'is_current') THEN
                RETURN NEW;
            END IF;
            RAISE EXCEPTION 'order_statuses is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_order_statuses_append_only
        BEFORE UPDATE OR DELETE ON order_statuses
        FOR EACH ROW
        EXECUTE FUNCTION prevent_order_status_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_order_statuses_append_only ON order_statuses;")
    op.execute("DROP FUNCTION IF EXISTS prevent_order_status_mutation();")
