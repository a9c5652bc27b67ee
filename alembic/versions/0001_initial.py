from __future__ import annotations

from alembic import op
from sqlmodel import SQLModel
from carslab_crm.db.base import *  # noqa: F401,F403 registers every table on SQLModel.metadata

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Baseline: companies, users, workstations, tablets, pairing codes,
    # signature sessions, audit and auth logs.
    bind = op.get_bind()
    SQLModel.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    SQLModel.metadata.drop_all(bind=bind)
