"""Initial migration - create all tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None

bufferkind = sa.Enum('pm25', 'aqi', name='bufferkind')
bufferstatus = sa.Enum('Exists', 'InProgress', 'DoesNotExist', name='bufferstatus')


def upgrade() -> None:
    op.create_table(
        'sensors',
        sa.Column('id', sa.String(20), primary_key=True),
        sa.Column('purpleair_id', sa.Integer(), nullable=False, unique=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('is_valid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('aqi', sa.Float(), nullable=True),
        sa.Column('aqi_timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('nowcast_pm25', sa.Float(), nullable=True),
        sa.Column('invalid_aqi_reason', sa.String(50), nullable=True),
        sa.Column('reading_errors', sa.JSON(), nullable=True),
        sa.Column('reading_confidence', sa.Integer(), nullable=True),
        sa.Column('last_sensor_reading_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_valid_aqi_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_sensors_is_active', 'sensors', ['is_active'])

    op.create_table(
        'sensor_buffers',
        sa.Column('sensor_id', sa.String(20), sa.ForeignKey('sensors.id'), primary_key=True),
        sa.Column('kind', bufferkind, primary_key=True),
        sa.Column('status', bufferstatus, nullable=False),
        sa.Column('elements', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'sensor_readings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('sensor_id', sa.String(20), sa.ForeignKey('sensors.id'), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('channel_a_pm25', sa.Float(), nullable=True),
        sa.Column('channel_b_pm25', sa.Float(), nullable=True),
        sa.Column('humidity', sa.Float(), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('mean_percent_difference', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_sensor_readings_sensor_timestamp', 'sensor_readings', ['sensor_id', 'timestamp'])
    op.create_index('ix_sensor_readings_timestamp', 'sensor_readings', ['timestamp'])


def downgrade() -> None:
    op.drop_index('ix_sensor_readings_timestamp', table_name='sensor_readings')
    op.drop_index('ix_sensor_readings_sensor_timestamp', table_name='sensor_readings')
    op.drop_table('sensor_readings')
    op.drop_table('sensor_buffers')
    op.drop_index('ix_sensors_is_active', table_name='sensors')
    op.drop_table('sensors')
    bufferstatus.drop(op.get_bind(), checkfirst=True)
    bufferkind.drop(op.get_bind(), checkfirst=True)
