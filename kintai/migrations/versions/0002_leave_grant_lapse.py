"""Track lapsed units of expired leave grants

Revision ID: 0002_leave_grant_lapse
Revises: 0001_initial
Create Date: 2026-10-19 15:30:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_leave_grant_lapse"
down_revision: Union[str, None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "leave_grants",
        sa.Column("lapsed_units", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.add_column("leave_grants", sa.Column("lapsed_at", sa.DateTime(timezone=True), nullable=True))
    op.create_check_constraint(
        "ck_leave_grants_lapsed_units_range",
        "leave_grants",
        "lapsed_units >= 0 AND lapsed_units <= units",
    )
    op.create_index("ix_leave_grants_expires_on", "leave_grants", ["expires_on"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_leave_grants_expires_on", table_name="leave_grants")
    op.drop_constraint("ck_leave_grants_lapsed_units_range", "leave_grants", type_="check")
    op.drop_column("leave_grants", "lapsed_at")
    op.drop_column("leave_grants", "lapsed_units")
