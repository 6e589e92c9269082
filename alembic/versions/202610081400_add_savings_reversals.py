"""add compensating reversals to savings transactions

Revision ID: 202610081400
Revises: 202610010900
Create Date: 2026-10-08 14:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610081400"
down_revision = "202610010900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("savings_transactions") as batch_op:
        batch_op.add_column(sa.Column("reversal_of_id", sa.Integer()))
        batch_op.create_foreign_key(
            "fk_savings_txn_reversal_of",
            "savings_transactions",
            ["reversal_of_id"],
            ["id"],
            ondelete="SET NULL",
        )
        batch_op.create_unique_constraint(
            "uq_savings_txn_reversal_of", ["reversal_of_id"]
        )


def downgrade() -> None:
    with op.batch_alter_table("savings_transactions") as batch_op:
        batch_op.drop_constraint("uq_savings_txn_reversal_of", type_="unique")
        batch_op.drop_constraint("fk_savings_txn_reversal_of", type_="foreignkey")
        batch_op.drop_column("reversal_of_id")
