"""Initial schema: versioned source data, datasets, graphs and stage runs

Revision ID: tripgraph_001
Revises:
Create Date: 2025-06-02 10:00:00

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from geoalchemy2 import Geometry

revision: str = 'tripgraph_001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS postgis')

    op.create_table(
        'stops',
        sa.Column('stop_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('dataset_version', sa.String(64), nullable=False),
        sa.Column('external_id', sa.String(120), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=False),
        sa.Column('longitude', sa.Float(), nullable=False),
        sa.Column('location', Geometry('POINT', srid=4326), nullable=False),
        sa.Column('city_id', sa.String(120), nullable=True),
        sa.Column('kind', sa.String(10), nullable=False),
        sa.Column('stop_type', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('dataset_version', 'external_id', name='uq_stop_version_external'),
    )
    op.create_index('ix_stops_dataset_version', 'stops', ['dataset_version'])
    op.create_index('ix_stops_city_id', 'stops', ['city_id'])
    op.create_index('ix_stops_kind', 'stops', ['kind'])
    op.create_index('idx_stop_version_kind', 'stops', ['dataset_version', 'kind'])

    op.create_table(
        'routes',
        sa.Column('route_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('dataset_version', sa.String(64), nullable=False),
        sa.Column('external_id', sa.String(160), nullable=False),
        sa.Column('from_stop_id', sa.String(120), nullable=False),
        sa.Column('to_stop_id', sa.String(120), nullable=False),
        sa.Column('transport_mode', sa.String(30), nullable=False),
        sa.Column('distance_km', sa.Float(), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        sa.Column('kind', sa.String(10), nullable=False),
        sa.Column('generation_method', sa.String(40), nullable=True),
        sa.Column('source_city', sa.String(120), nullable=True),
        sa.Column('target_city', sa.String(120), nullable=True),
        sa.Column('route_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('dataset_version', 'external_id', name='uq_route_version_external'),
    )
    op.create_index('ix_routes_dataset_version', 'routes', ['dataset_version'])
    op.create_index('ix_routes_kind', 'routes', ['kind'])
    op.create_index('idx_route_endpoints', 'routes', ['dataset_version', 'from_stop_id', 'to_stop_id'])

    op.create_table(
        'flights',
        sa.Column('flight_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('dataset_version', sa.String(64), nullable=False),
        sa.Column('external_id', sa.String(200), nullable=False),
        sa.Column('route_id', sa.String(160), nullable=True),
        sa.Column('from_stop_id', sa.String(120), nullable=False),
        sa.Column('to_stop_id', sa.String(120), nullable=False),
        sa.Column('departure_time', sa.String(32), nullable=True),
        sa.Column('arrival_time', sa.String(32), nullable=True),
        sa.Column('days_of_week', sa.JSON(), nullable=True),
        sa.Column('price', sa.Float(), nullable=True),
        sa.Column('is_virtual', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('dataset_version', 'external_id', name='uq_flight_version_external'),
    )
    op.create_index('ix_flights_dataset_version', 'flights', ['dataset_version'])
    op.create_index('ix_flights_route_id', 'flights', ['route_id'])
    op.create_index('ix_flights_is_virtual', 'flights', ['is_virtual'])

    op.create_table(
        'datasets',
        sa.Column('dataset_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('version', sa.String(64), nullable=False, unique=True),
        sa.Column('source_hash', sa.String(64), nullable=False),
        sa.Column('stops_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('routes_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('flights_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('virtual_stops_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('virtual_routes_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('virtual_flights_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('build_timestamp', sa.DateTime(), nullable=False),
        sa.Column('synthesized_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default='false', nullable=False),
    )
    op.create_index('ix_datasets_version', 'datasets', ['version'])
    op.create_index('ix_datasets_source_hash', 'datasets', ['source_hash'])
    op.create_index('ix_datasets_is_active', 'datasets', ['is_active'])

    op.create_table(
        'graphs',
        sa.Column('graph_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('version', sa.String(80), nullable=False, unique=True),
        sa.Column('dataset_version', sa.String(64), nullable=False),
        sa.Column('nodes_count', sa.Integer(), nullable=False),
        sa.Column('edges_count', sa.Integer(), nullable=False),
        sa.Column('build_duration_ms', sa.Integer(), server_default='0', nullable=False),
        sa.Column('storage_key', sa.String(200), nullable=False),
        sa.Column('backup_path', sa.String(300), nullable=True),
        sa.Column('build_timestamp', sa.DateTime(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='false', nullable=False),
    )
    op.create_index('ix_graphs_version', 'graphs', ['version'])
    op.create_index('ix_graphs_dataset_version', 'graphs', ['dataset_version'])
    op.create_index('ix_graphs_is_active', 'graphs', ['is_active'])

    op.create_table(
        'stage_runs',
        sa.Column('run_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('stage_id', sa.String(50), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('success', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('code', sa.String(30), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
    )
    op.create_index('idx_stage_run_started', 'stage_runs', ['stage_id', 'started_at'])


def downgrade() -> None:
    op.drop_table('stage_runs')
    op.drop_table('graphs')
    op.drop_table('datasets')
    op.drop_table('flights')
    op.drop_table('routes')
    op.drop_table('stops')
