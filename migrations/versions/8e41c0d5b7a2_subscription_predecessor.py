"""subscriptions: remember the row a renewal superseded

Revision ID: 8e41c0d5b7a2
Revises: 3b7d2f1c9a01
Create Date: 2025-06-20 14:30:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '8e41c0d5b7a2'
down_revision = '3b7d2f1c9a01'
branch_labels = None
depends_on = None


def upgrade():
    # batch mode so SQLite can add the self-referencing FK
    with op.batch_alter_table('subscriptions') as batch:
        batch.add_column(sa.Column('previous_subscription_id', sa.Integer(), nullable=True))
        batch.create_foreign_key(
            'fk_subscriptions_previous_subscription_id',
            'subscriptions',
            ['previous_subscription_id'],
            ['id'],
            ondelete='SET NULL',
        )
        batch.create_index('ix_subscriptions_previous_subscription_id', ['previous_subscription_id'])


def downgrade():
    with op.batch_alter_table('subscriptions') as batch:
        batch.drop_index('ix_subscriptions_previous_subscription_id')
        batch.drop_constraint('fk_subscriptions_previous_subscription_id', type_='foreignkey')
        batch.drop_column('previous_subscription_id')
