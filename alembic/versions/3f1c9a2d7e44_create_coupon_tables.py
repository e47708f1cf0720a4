"""create_coupon_tables

Revision ID: 3f1c9a2d7e44
Revises:
Create Date: 2026-10-18 10:02:11.418305

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


# revision identifiers, used by Alembic.
revision: str = '3f1c9a2d7e44'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_login', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'])

    op.create_table(
        'forms',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('slug', sa.String(100), nullable=False, unique=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('college', sa.String(255), nullable=False, server_default=''),
        sa.Column('activation', sa.DateTime(), nullable=False),
        sa.Column('deactivation', sa.DateTime(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('coupon_required', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('generate_coupons', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('coupon_limit', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_by_id', UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['created_by_id'], ['users.id'], ),
    )
    op.create_index('ix_forms_slug', 'forms', ['slug'])
    op.create_index('ix_forms_window', 'forms', ['activation', 'deactivation'])

    op.create_table(
        'registrations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('form_id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('mobile', sa.String(20), nullable=False),
        sa.Column('college', sa.String(255), nullable=False, server_default=''),
        sa.Column('register_number', sa.String(100), nullable=False, server_default=''),
        sa.Column('yop', sa.String(10), nullable=False, server_default=''),
        sa.Column('dynamic_fields', JSONB(), nullable=True),
        sa.Column('latitude', sa.Numeric(10, 8), nullable=True),
        sa.Column('longitude', sa.Numeric(11, 8), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('coupon_code', sa.String(100), nullable=True),
        sa.Column('linkedin_url', sa.Text(), nullable=True),
        sa.Column('coupon_used', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('coupon_used_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['form_id'], ['forms.id'], ),
        sa.UniqueConstraint('email', 'form_id', name='uq_registrations_email_form'),
        sa.UniqueConstraint('mobile', 'form_id', name='uq_registrations_mobile_form'),
    )
    op.create_index('ix_registrations_form_created', 'registrations', ['form_id', 'created_at'])
    op.create_index('ix_registrations_email', 'registrations', ['email'])
    op.create_index('ix_registrations_mobile', 'registrations', ['mobile'])
    op.create_index('ix_registrations_coupon_code', 'registrations', ['coupon_code'])

    op.create_table(
        'coupon_uploads',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=True),
        sa.Column('file_size', sa.Integer(), nullable=True),
        sa.Column('uploaded_by_id', UUID(as_uuid=True), nullable=True),
        sa.Column('form_id', UUID(as_uuid=True), nullable=True),
        sa.Column('coupons_added', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('duplicates_skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('errors', JSONB(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='processing'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['uploaded_by_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['form_id'], ['forms.id'], ),
    )

    op.create_table(
        'coupons',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('code', sa.String(100), nullable=False, unique=True),
        sa.Column('form_id', UUID(as_uuid=True), nullable=True),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('discount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('is_percentage', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('max_uses', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('expiry_date', sa.DateTime(), nullable=True),
        sa.Column('linkedin_url', sa.Text(), nullable=True),
        sa.Column('upload_id', UUID(as_uuid=True), nullable=True),
        sa.Column('created_by_id', UUID(as_uuid=True), nullable=True),
        sa.Column('extra_data', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['form_id'], ['forms.id'], ),
        sa.ForeignKeyConstraint(['upload_id'], ['coupon_uploads.id'], ),
        sa.ForeignKeyConstraint(['created_by_id'], ['users.id'], ),
        sa.CheckConstraint('used_count >= 0 AND used_count <= max_uses', name='ck_coupons_used_count'),
    )
    op.create_index('ix_coupons_code', 'coupons', ['code'])
    op.create_index('ix_coupons_pool', 'coupons', ['form_id', 'is_active', 'id'])
    op.create_index('ix_coupons_upload', 'coupons', ['upload_id'])

    op.create_table(
        'coupon_usages',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('coupon_id', sa.Integer(), nullable=False),
        sa.Column('registration_id', UUID(as_uuid=True), nullable=False),
        sa.Column('form_id', UUID(as_uuid=True), nullable=True),
        sa.Column('used_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('redeemed_at', sa.DateTime(), nullable=True),
        sa.Column('discount_applied', sa.Numeric(10, 2), nullable=True),
        sa.Column('user_name', sa.String(255), nullable=True),
        sa.Column('user_email', sa.String(255), nullable=True),
        sa.Column('user_mobile', sa.String(20), nullable=True),
        sa.Column('redemption_data', JSONB(), nullable=True),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('coupon_id', 'registration_id', name='uq_coupon_usages_coupon_registration'),
    )
    op.create_index('ix_coupon_usages_registration', 'coupon_usages', ['registration_id'])

    op.create_table(
        'coupon_copy_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('coupon_id', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('view_time', sa.DateTime(), nullable=True),
        sa.Column('source', sa.String(100), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('form_id', UUID(as_uuid=True), nullable=True),
        sa.Column('form_slug', sa.String(100), nullable=True),
        sa.Column('form_name', sa.String(255), nullable=True),
        sa.Column('linkedin_url', sa.Text(), nullable=True),
        sa.Column('registration_time', sa.DateTime(), nullable=True),
        sa.Column('from_success_banner', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('form_data', JSONB(), nullable=True),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_coupon_copy_events_coupon_time', 'coupon_copy_events', ['coupon_id', 'timestamp'])


def downgrade() -> None:
    op.drop_index('ix_coupon_copy_events_coupon_time', table_name='coupon_copy_events')
    op.drop_table('coupon_copy_events')
    op.drop_index('ix_coupon_usages_registration', table_name='coupon_usages')
    op.drop_table('coupon_usages')
    op.drop_index('ix_coupons_upload', table_name='coupons')
    op.drop_index('ix_coupons_pool', table_name='coupons')
    op.drop_index('ix_coupons_code', table_name='coupons')
    op.drop_table('coupons')
    op.drop_table('coupon_uploads')
    op.drop_index('ix_registrations_coupon_code', table_name='registrations')
    op.drop_index('ix_registrations_mobile', table_name='registrations')
    op.drop_index('ix_registrations_email', table_name='registrations')
    op.drop_index('ix_registrations_form_created', table_name='registrations')
    op.drop_table('registrations')
    op.drop_index('ix_forms_window', table_name='forms')
    op.drop_index('ix_forms_slug', table_name='forms')
    op.drop_table('forms')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
