"""create clusters and environments

Revision ID: 20260301120000
Revises:
Create Date: 2026-03-01 12:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20260301120000'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'clusters',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('provider', sa.String(length=50), nullable=False, server_default='kubernetes'),
        sa.Column('region', sa.String(length=50), nullable=False),
        # iv:authTag:cipher (hex); legacy rows iv:cipher or plaintext
        sa.Column('kubeconfig', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='ACTIVE'),
        sa.Column('node_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )
    op.create_index(op.f('ix_clusters_id'), 'clusters', ['id'], unique=False)

    op.create_table(
        'environments',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('cluster_id', sa.String(length=36), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='CREATING'),
        sa.Column('docker_image', sa.String(length=500), nullable=False),
        sa.Column('port', sa.Integer(), nullable=False, server_default='8080'),
        sa.Column('resources_cpu', sa.String(length=20), nullable=False, server_default='500m'),
        sa.Column('resources_memory', sa.String(length=20), nullable=False, server_default='1Gi'),
        sa.Column('resources_storage', sa.String(length=20), nullable=False, server_default='10Gi'),
        sa.Column('environment_variables', sa.JSON(), nullable=True),
        sa.Column('kubernetes_namespace', sa.String(length=63), nullable=True),
        sa.Column('kubernetes_deployment_name', sa.String(length=63), nullable=True),
        sa.Column('kubernetes_service_name', sa.String(length=63), nullable=True),
        sa.Column('external_url', sa.String(length=500), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['cluster_id'], ['clusters.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_environments_id'), 'environments', ['id'], unique=False)
    op.create_index(op.f('ix_environments_user_id'), 'environments', ['user_id'], unique=False)
    op.create_index(op.f('ix_environments_cluster_id'), 'environments', ['cluster_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_environments_cluster_id'), table_name='environments')
    op.drop_index(op.f('ix_environments_user_id'), table_name='environments')
    op.drop_index(op.f('ix_environments_id'), table_name='environments')
    op.drop_table('environments')
    op.drop_index(op.f('ix_clusters_id'), table_name='clusters')
    op.drop_table('clusters')
