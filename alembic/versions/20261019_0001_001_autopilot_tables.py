"""001 — Autopilot tables

Revision ID: 001_autopilot_tables
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_autopilot_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'autopilot_agents',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('goal', sa.Text(), nullable=False, server_default=''),
        sa.Column('system_prompt', sa.Text(), nullable=False, server_default=''),
        sa.Column('goal_completion_behavior', sa.String(20), nullable=False, server_default='maintenance'),
        sa.Column('behavior', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'autopilot_chat_configs',
        sa.Column('chat_id', sa.String(255), primary_key=True),
        sa.Column('agent_id', sa.String(36), nullable=False, index=True),
        sa.Column('mode', sa.String(20), nullable=False, server_default='self-driving'),
        sa.Column('status', sa.String(20), nullable=False, server_default='inactive'),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('self_driving_duration_minutes', sa.Integer(), nullable=True),
        sa.Column('self_driving_started_at', sa.DateTime(), nullable=True),
        sa.Column('self_driving_expires_at', sa.DateTime(), nullable=True),
        sa.Column('messages_handled', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_activity_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('error_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('goal_completion_behavior_override', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'autopilot_scheduled_actions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('seq', sa.Integer(), nullable=False, index=True),
        sa.Column('chat_id', sa.String(255), nullable=False, index=True),
        sa.Column('agent_id', sa.String(36), nullable=False),
        sa.Column('type', sa.String(30), nullable=False, server_default='send-message'),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('message_text', sa.Text(), nullable=True),
        sa.Column('message_id', sa.String(255), nullable=True),
        sa.Column('draft_id', sa.String(36), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        'ix_autopilot_actions_status_due',
        'autopilot_scheduled_actions',
        ['status', 'scheduled_for'],
    )

    op.create_table(
        'autopilot_activity',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('seq', sa.Integer(), nullable=False, index=True),
        sa.Column('chat_id', sa.String(255), nullable=False, index=True),
        sa.Column('agent_id', sa.String(36), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('timestamp', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('message_text', sa.Text(), nullable=True),
        sa.Column('draft_text', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
    )

    op.create_table(
        'autopilot_handoffs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('chat_id', sa.String(255), nullable=False, index=True),
        sa.Column('agent_id', sa.String(36), nullable=False),
        sa.Column('summary', sa.Text(), nullable=False),
        sa.Column('key_points', sa.JSON(), nullable=True),
        sa.Column('suggested_next_steps', sa.JSON(), nullable=True),
        sa.Column('goal_status', sa.String(20), nullable=False, server_default='unclear'),
        sa.Column('generated_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'autopilot_suggestions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('chat_id', sa.String(255), nullable=False, index=True),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('message_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table('autopilot_suggestions')
    op.drop_table('autopilot_handoffs')
    op.drop_table('autopilot_activity')
    op.drop_index('ix_autopilot_actions_status_due', table_name='autopilot_scheduled_actions')
    op.drop_table('autopilot_scheduled_actions')
    op.drop_table('autopilot_chat_configs')
    op.drop_table('autopilot_agents')
