"""Initial database schema

Revision ID: 20261017_000001
Revises: 
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20261017_000001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create workflow_templates table
    op.create_table(
        'workflow_templates',
        sa.Column('id', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('process_template_id', sa.String(255), nullable=True),
        sa.Column('sub_process_template_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, default='draft'),
        sa.Column('version', sa.Integer(), nullable=False, default=1),
        sa.Column('is_default', sa.Boolean(), nullable=False, default=True),
        sa.Column('canvas_settings', postgresql.JSONB(), nullable=False, default={}),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_workflow_templates_status', 'workflow_templates', ['status'])
    op.create_index(
        'ix_workflow_templates_template_pair',
        'workflow_templates',
        ['process_template_id', 'sub_process_template_id', 'status'],
    )

    # Create workflow_nodes table
    op.create_table(
        'workflow_nodes',
        sa.Column('workflow_id', sa.String(255), nullable=False),
        sa.Column('id', sa.String(255), nullable=False),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('label', sa.String(255), nullable=False, default=''),
        sa.Column('position_x', sa.Float(), nullable=False, default=0.0),
        sa.Column('position_y', sa.Float(), nullable=False, default=0.0),
        sa.Column('width', sa.Float(), nullable=True),
        sa.Column('height', sa.Float(), nullable=True),
        sa.Column('config', postgresql.JSONB(), nullable=False, default={}),
        sa.PrimaryKeyConstraint('workflow_id', 'id'),
        sa.ForeignKeyConstraint(['workflow_id'], ['workflow_templates.id'], ondelete='CASCADE'),
    )

    # Create workflow_edges table
    op.create_table(
        'workflow_edges',
        sa.Column('workflow_id', sa.String(255), nullable=False),
        sa.Column('id', sa.String(255), nullable=False),
        sa.Column('source_node_id', sa.String(255), nullable=False),
        sa.Column('target_node_id', sa.String(255), nullable=False),
        sa.Column('source_handle', sa.String(255), nullable=True),
        sa.Column('target_handle', sa.String(255), nullable=True),
        sa.Column('label', sa.String(255), nullable=True),
        sa.Column('branch_label', sa.String(255), nullable=True),
        sa.Column('animated', sa.Boolean(), nullable=False, default=True),
        sa.PrimaryKeyConstraint('workflow_id', 'id'),
        sa.ForeignKeyConstraint(['workflow_id'], ['workflow_templates.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_workflow_edges_source', 'workflow_edges', ['workflow_id', 'source_node_id'])
    op.create_index('ix_workflow_edges_target', 'workflow_edges', ['workflow_id', 'target_node_id'])

    # Create workflow_template_versions table
    op.create_table(
        'workflow_template_versions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('workflow_id', sa.String(255), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, default='active'),
        sa.Column('snapshot', postgresql.JSONB(), nullable=False),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['workflow_id'], ['workflow_templates.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('workflow_id', 'version', name='uq_workflow_template_version'),
    )
    op.create_index(
        'ix_workflow_template_versions_workflow_id',
        'workflow_template_versions',
        ['workflow_id'],
    )


def downgrade() -> None:
    op.drop_table('workflow_template_versions')
    op.drop_table('workflow_edges')
    op.drop_table('workflow_nodes')
    op.drop_table('workflow_templates')
