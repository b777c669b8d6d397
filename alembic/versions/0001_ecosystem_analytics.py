from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_ecosystem_analytics'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'ecosystem_events',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('event_id', sa.String(128), nullable=False),
        sa.Column('participant_hash', sa.String(64), nullable=True, index=True),
        sa.Column('session_id', sa.String(128), nullable=True, index=True),
        sa.Column('product', sa.String(32), nullable=False),
        sa.Column('event_type', sa.String(32), nullable=False),
        sa.Column('catalog_item_id', sa.String(255), nullable=True),
        sa.Column('metadata', sa.JSON, nullable=False),
        sa.Column('ts', sa.DateTime, nullable=False, index=True),
        sa.Column('received_at', sa.DateTime, nullable=False),
        sa.Column('aggregated_at', sa.DateTime, nullable=True, index=True),
    )
    op.create_index('ix_ecosystem_events_event_id', 'ecosystem_events', ['event_id'], unique=True)
    op.create_index('ix_ecosystem_events_product_type', 'ecosystem_events', ['product', 'event_type'])
    op.create_index('ix_ecosystem_events_participant_ts', 'ecosystem_events', ['participant_hash', 'ts'])

    op.create_table(
        'user_journeys',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('participant_hash', sa.String(64), nullable=False),
        sa.Column('first_touchpoint', sa.String(32), nullable=False, index=True),
        sa.Column('last_touchpoint', sa.String(32), nullable=False),
        sa.Column('conversion_path', sa.String(512), nullable=False, index=True),
        sa.Column('path_length', sa.Integer, nullable=False, index=True),
        sa.Column('total_interactions', sa.Integer, nullable=False),
        sa.Column('first_seen_at', sa.DateTime, nullable=False),
        sa.Column('last_seen_at', sa.DateTime, nullable=False, index=True),
    )
    op.create_index('ix_user_journeys_participant_hash', 'user_journeys', ['participant_hash'], unique=True)

    op.create_table(
        'install_velocity',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('product', sa.String(32), nullable=False),
        sa.Column('bucket_date', sa.Date, nullable=False),
        sa.Column('bucket_hour', sa.Integer, nullable=False),
        sa.Column('install_count', sa.Integer, nullable=False),
        sa.Column('unique_participant_count', sa.Integer, nullable=False),
        sa.UniqueConstraint('product', 'bucket_date', 'bucket_hour', name='ux_install_velocity_bucket'),
        sa.CheckConstraint('bucket_hour >= 0 AND bucket_hour < 24', name='ck_install_velocity_hour'),
    )
    op.create_index('ix_install_velocity_product_date', 'install_velocity', ['product', 'bucket_date', 'bucket_hour'])

    op.create_table(
        'velocity_bucket_participants',
        sa.Column('product', sa.String(32), primary_key=True),
        sa.Column('bucket_date', sa.Date, primary_key=True),
        sa.Column('bucket_hour', sa.Integer, primary_key=True),
        sa.Column('participant_hash', sa.String(64), primary_key=True),
    )

    op.create_table(
        'discovery_matrix',
        sa.Column('source_product', sa.String(32), primary_key=True),
        sa.Column('destination_product', sa.String(32), primary_key=True),
        sa.Column('discovery_count', sa.Integer, nullable=False, index=True),
        sa.Column('conversion_count', sa.Integer, nullable=False),
        sa.Column('last_updated', sa.DateTime, nullable=False),
        sa.CheckConstraint('source_product <> destination_product', name='ck_discovery_matrix_no_self_loop'),
    )

    op.create_table(
        'referral_attributions',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('referral_event_id', sa.String(128), nullable=True, unique=True),
        sa.Column('participant_hash', sa.String(64), nullable=False),
        sa.Column('source_product', sa.String(32), nullable=False),
        sa.Column('destination_product', sa.String(32), nullable=False),
        sa.Column('referred_at', sa.DateTime, nullable=False),
        sa.Column('converted_at', sa.DateTime, nullable=True),
        sa.Column('conversion_event_id', sa.String(128), nullable=True),
    )
    op.create_index('ix_referral_lookup', 'referral_attributions', ['participant_hash', 'destination_product', 'referred_at'])

    op.create_table(
        'conversion_records',
        sa.Column('event_id', sa.String(128), primary_key=True),
        sa.Column('participant_hash', sa.String(64), nullable=True, index=True),
        sa.Column('destination_product', sa.String(32), nullable=False, index=True),
        sa.Column('converted_at', sa.DateTime, nullable=False),
        sa.Column('attributed', sa.Boolean, nullable=False, index=True),
        sa.Column('source_product', sa.String(32), nullable=True),
        sa.Column('referral_id', sa.Integer, nullable=True),
    )


def downgrade():
    op.drop_table('conversion_records')
    op.drop_index('ix_referral_lookup', table_name='referral_attributions')
    op.drop_table('referral_attributions')
    op.drop_table('discovery_matrix')
    op.drop_table('velocity_bucket_participants')
    op.drop_index('ix_install_velocity_product_date', table_name='install_velocity')
    op.drop_table('install_velocity')
    op.drop_index('ix_user_journeys_participant_hash', table_name='user_journeys')
    op.drop_table('user_journeys')
    op.drop_index('ix_ecosystem_events_participant_ts', table_name='ecosystem_events')
    op.drop_index('ix_ecosystem_events_product_type', table_name='ecosystem_events')
    op.drop_index('ix_ecosystem_events_event_id', table_name='ecosystem_events')
    op.drop_table('ecosystem_events')
