"""create production tables

Revision ID: 5a7c9e21b4d0
Revises:
Create Date: 2026-10-19 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5a7c9e21b4d0'
down_revision = None
branch_labels = None
depends_on = None


def _amount(name):
    return sa.Column(name, sa.Numeric(20, 8), nullable=False, server_default='0')


def _enum(name, **kwargs):
    # Enums are stored as plain strings (native_enum=False on the models)
    return sa.Column(name, sa.String(length=32), **kwargs)


def upgrade():
    op.create_table(
        'user',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(length=64), nullable=False),
    )
    op.create_index('ix_user_username', 'user', ['username'], unique=True)

    op.create_table(
        'land',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('land_id', sa.String(length=64), nullable=False),
        _enum('land_type', nullable=False),
        sa.Column('owner_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('region_name', sa.String(length=128), nullable=True),
        sa.Column('is_available', sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index('ix_land_land_id', 'land', ['land_id'], unique=True)
    op.create_index('ix_land_owner_id', 'land', ['owner_id'])

    op.create_table(
        'mining_session',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.String(length=32), nullable=True),
        sa.Column('land_id', sa.Integer(), sa.ForeignKey('land.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        _enum('mining_type', nullable=False),
        _enum('status', nullable=False),
        _enum('resource_type', nullable=False),
        _amount('output_rate'),
        _amount('tax_rate'),
        _amount('user_share_rate'),
        _amount('grain_consumption_rate'),
        _amount('accumulated_output'),
        _amount('accumulated_tax'),
        _amount('accumulated_owner_output'),
        _amount('collected_output'),
        _amount('grain_consumed'),
        sa.Column('paused_reason', sa.String(length=64), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('last_settlement_time', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_mining_session_session_id', 'mining_session', ['session_id'], unique=True)
    op.create_index('ix_mining_session_land_id', 'mining_session', ['land_id'])
    op.create_index('ix_mining_session_user_id', 'mining_session', ['user_id'])
    op.create_index('ix_mining_session_status', 'mining_session', ['status'])

    op.create_table(
        'tool',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tool_id', sa.String(length=32), nullable=True),
        _enum('tool_type', nullable=False),
        sa.Column('owner_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('durability', sa.Integer(), nullable=False),
        sa.Column('max_durability', sa.Integer(), nullable=False),
        _amount('wear_remainder'),
        _enum('status', nullable=False),
        sa.Column('current_session_id', sa.Integer(), sa.ForeignKey('mining_session.id'), nullable=True),
        sa.Column('deposited_land_id', sa.Integer(), sa.ForeignKey('land.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_tool_tool_id', 'tool', ['tool_id'], unique=True)
    op.create_index('ix_tool_owner_id', 'tool', ['owner_id'])
    op.create_index('ix_tool_status', 'tool', ['status'])
    op.create_index('ix_tool_current_session_id', 'tool', ['current_session_id'])
    op.create_index('ix_tool_deposited_land_id', 'tool', ['deposited_land_id'])

    op.create_table(
        'user_resource',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        _enum('resource_type', nullable=False),
        _amount('amount'),
        _amount('frozen_amount'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('user_id', 'resource_type', name='uq_user_resource'),
    )
    op.create_index('ix_user_resource_user_id', 'user_resource', ['user_id'])

    op.create_table(
        'resource_transaction',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        _enum('resource_type', nullable=False),
        _enum('operation', nullable=False),
        _amount('quantity'),
        sa.Column('reason', sa.String(length=64), nullable=False),
        sa.Column('reference', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_resource_transaction_user_id', 'resource_transaction', ['user_id'])

    op.create_table(
        'session_tool',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('mining_session.id'), nullable=False),
        sa.Column('tool_id', sa.Integer(), sa.ForeignKey('tool.id'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('bound_at', sa.DateTime(), nullable=False),
        sa.Column('unbound_at', sa.DateTime(), nullable=True),
        sa.Column('durability_at_bind', sa.Integer(), nullable=False),
        sa.Column('durability_at_unbind', sa.Integer(), nullable=True),
    )
    op.create_index('ix_session_tool_session_id', 'session_tool', ['session_id'])
    op.create_index('ix_session_tool_tool_id', 'session_tool', ['tool_id'])

    op.create_table(
        'settlement_record',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('mining_session.id'), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('window_end', sa.DateTime(), nullable=False),
        _amount('hours'),
        _amount('output_rate'),
        sa.Column('tool_count', sa.Integer(), nullable=False),
        _amount('gross_output'),
        _amount('tax'),
        _amount('user_output'),
        _amount('owner_output'),
        _amount('grain_consumed'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_settlement_record_session_id', 'settlement_record', ['session_id'])


def downgrade():
    op.drop_table('settlement_record')
    op.drop_table('session_tool')
    op.drop_table('resource_transaction')
    op.drop_table('user_resource')
    op.drop_table('tool')
    op.drop_table('mining_session')
    op.drop_table('land')
    op.drop_table('user')
