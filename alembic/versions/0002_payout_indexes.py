"""Payout queue indexes

Revision ID: 0002_payout_indexes
Revises: 0001_initial_schema
Create Date: 2026-09-20

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_payout_indexes"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None

INDEXES = [
    ("contracts", "ix_contracts_status_completed_at", ["status", "completed_at"]),
    ("payments", "ix_payments_contract_status", ["contract_id", "status"]),
    ("balance_transactions", "ix_balance_transactions_user_type", ["user_id", "type"]),
]


def _has_table(insp: sa.Inspector, table: str) -> bool:
    return table in insp.get_table_names()


def _index_names(table: str) -> set[str]:
    insp = sa.inspect(op.get_bind())
    if not _has_table(insp, table):
        return set()
    return {idx["name"] for idx in insp.get_indexes(table)}


def _ensure_index(table: str, name: str, columns: list[str]) -> None:
    insp = sa.inspect(op.get_bind())
    if not _has_table(insp, table):
        return
    if name not in _index_names(table):
        op.create_index(name, table, columns, unique=False)


def upgrade() -> None:
    for table, name, columns in INDEXES:
        _ensure_index(table, name, columns)


def downgrade() -> None:
    for table, name, _ in reversed(INDEXES):
        if name in _index_names(table):
            op.drop_index(name, table_name=table)
