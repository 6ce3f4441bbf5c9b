"""transit base schema

Revision ID: 20261018_init_schema
Revises:
Create Date: 2026-10-18 00:00:00

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '20261018_init_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Bootstraps an empty database from the models, including the partial
    # unique index that allows one active ride per user.
    bind = op.get_bind()
    from transit_api.models import Base
    Base.metadata.create_all(bind)


def downgrade() -> None:
    bind = op.get_bind()
    from transit_api.models import Base
    Base.metadata.drop_all(bind)
