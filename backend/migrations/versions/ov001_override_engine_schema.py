"""override engine schema

Revision ID: ov001_override_engine
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the complete override approval schema:
- users / session_tokens: staff accounts and bearer sessions
- override_threshold_rules / override_rule_levels / override_rule_exceptions:
  administrator policy with tiered approval ladders and scoped exceptions
- approval_delegations: time-bounded authority hand-offs
- manager_credentials: PIN credentials with lockout and daily quota
- approval_requests / approval_counter_offers: request lifecycle, batches, tokens
- override_audit_log: append-only decision log
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'ov001_override_engine'
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.text('CURRENT_TIMESTAMP'))


def upgrade():
    # ============================================================================
    # users / session_tokens
    # ============================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('display_name', sa.String(length=128), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=32), nullable=False, server_default='salesperson'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _created_at(),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_users_username', 'users', ['username'], unique=True)
    op.create_index('ix_users_role_active', 'users', ['role', 'is_active'])

    op.create_table(
        'session_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(length=255), nullable=False),
        _created_at(),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_revoked', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_reason', sa.String(length=255), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_session_tokens_user_id', 'session_tokens', ['user_id'])
    op.create_index('ix_session_tokens_token_hash', 'session_tokens', ['token_hash'], unique=True)
    op.create_index('ix_session_tokens_expires_at', 'session_tokens', ['expires_at'])
    op.create_index('ix_session_tokens_is_revoked', 'session_tokens', ['is_revoked'])
    op.create_index('ix_session_tokens_user_active', 'session_tokens', ['user_id', 'is_revoked'])

    # ============================================================================
    # Threshold rules, approval ladders, exceptions
    # ============================================================================
    op.create_table(
        'override_threshold_rules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('rule_type', sa.String(length=32), nullable=False),
        sa.Column('threshold_value', sa.Numeric(12, 4), nullable=True),
        sa.Column('default_level', sa.String(length=32), nullable=False, server_default='manager'),
        sa.Column('applies_to_pos', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('applies_to_quotes', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('applies_to_online', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=True),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('active_start_time', sa.Time(), nullable=True),
        sa.Column('active_end_time', sa.Time(), nullable=True),
        sa.Column('active_days', sa.String(length=32), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('require_reason', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('reason_min_length', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('timeout_seconds', sa.Integer(), nullable=False, server_default='0'),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_override_threshold_rules_rule_type', 'override_threshold_rules', ['rule_type'])
    op.create_index('ix_override_rules_type_active', 'override_threshold_rules', ['rule_type', 'is_active'])

    op.create_table(
        'override_rule_levels',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('rule_id', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('level', sa.String(length=32), nullable=False),
        sa.Column('max_value', sa.Numeric(12, 4), nullable=True),  # NULL = unlimited, last rung only
        sa.ForeignKeyConstraint(['rule_id'], ['override_threshold_rules.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('rule_id', 'level', name='uq_override_rule_levels_rule_level'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_override_rule_levels_rule_id', 'override_rule_levels', ['rule_id'])

    op.create_table(
        'override_rule_exceptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('rule_id', sa.Integer(), nullable=False),
        sa.Column('scope', sa.String(length=16), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('is_exempt', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('override_threshold_value', sa.Numeric(12, 4), nullable=True),
        sa.Column('override_approval_level', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=True),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        _created_at(),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['rule_id'], ['override_threshold_rules.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_override_rule_exceptions_rule_active', 'override_rule_exceptions', ['rule_id', 'is_active'])

    # ============================================================================
    # approval_delegations
    # ============================================================================
    op.create_table(
        'approval_delegations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('delegator_id', sa.Integer(), nullable=False),
        sa.Column('delegate_id', sa.Integer(), nullable=False),
        sa.Column('max_tier', sa.Integer(), nullable=False),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        _created_at(),
        sa.CheckConstraint('delegator_id <> delegate_id', name='ck_approval_delegations_distinct_users'),
        sa.CheckConstraint('expires_at > starts_at', name='ck_approval_delegations_window'),
        sa.ForeignKeyConstraint(['delegator_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['delegate_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_approval_delegations_delegate_active', 'approval_delegations', ['delegate_id', 'active'])
    op.create_index('ix_approval_delegations_delegator_active', 'approval_delegations', ['delegator_id', 'active'])

    # ============================================================================
    # manager_credentials
    # ============================================================================
    op.create_table(
        'manager_credentials',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('pin_hash', sa.String(length=255), nullable=False),
        sa.Column('approval_level', sa.String(length=32), nullable=False, server_default='manager'),
        sa.Column('max_daily_overrides', sa.Integer(), nullable=True),
        sa.Column('override_count_today', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_override_date', sa.Date(), nullable=True),
        sa.Column('failed_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('locked_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('max_failed_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('lockout_minutes', sa.Integer(), nullable=False, server_default='15'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=True),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_manager_credentials_user_active', 'manager_credentials', ['user_id', 'is_active'])
    op.create_index('ix_manager_credentials_locked', 'manager_credentials', ['locked_until'])

    # ============================================================================
    # approval_requests / approval_counter_offers
    # ============================================================================
    op.create_table(
        'approval_requests',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('request_code', sa.String(length=20), nullable=False),
        sa.Column('request_type', sa.String(length=16), nullable=False, server_default='single'),
        sa.Column('override_type', sa.String(length=32), nullable=True),
        sa.Column('threshold_rule_id', sa.Integer(), nullable=True),
        sa.Column('parent_request_id', sa.Integer(), nullable=True),
        sa.Column('batch_label', sa.String(length=100), nullable=True),
        sa.Column('channel', sa.String(length=16), nullable=False, server_default='pos'),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('cart_ref', sa.String(length=64), nullable=True),
        sa.Column('line_ref', sa.String(length=64), nullable=True),
        sa.Column('requester_id', sa.Integer(), nullable=False),
        sa.Column('target_approver_id', sa.Integer(), nullable=True),
        sa.Column('resolved_by_id', sa.Integer(), nullable=True),
        sa.Column('delegation_id', sa.Integer(), nullable=True),
        sa.Column('original_value', sa.Numeric(12, 4), nullable=True),
        sa.Column('requested_value', sa.Numeric(12, 4), nullable=True),
        sa.Column('approved_value', sa.Numeric(12, 4), nullable=True),
        sa.Column('cost_value', sa.Numeric(12, 4), nullable=True),
        sa.Column('margin_value', sa.Numeric(12, 4), nullable=True),
        sa.Column('margin_percent', sa.Numeric(12, 4), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('required_level', sa.String(length=32), nullable=False, server_default='shift_lead'),
        sa.Column('auto_approved', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('exception_applied', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('method', sa.String(length=16), nullable=True),
        _created_at(),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('response_time_ms', sa.Integer(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approval_token', sa.String(length=64), nullable=True),
        sa.Column('token_used', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('token_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('denial_reason_code', sa.String(length=64), nullable=True),
        sa.Column('denial_reason_note', sa.Text(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['threshold_rule_id'], ['override_threshold_rules.id'], ),
        sa.ForeignKeyConstraint(['parent_request_id'], ['approval_requests.id'], ),
        sa.ForeignKeyConstraint(['requester_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['target_approver_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['resolved_by_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['delegation_id'], ['approval_delegations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('request_code'),
        sa.UniqueConstraint('approval_token'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_approval_requests_status', 'approval_requests', ['status'])
    op.create_index('ix_approval_requests_status_created', 'approval_requests', ['status', 'created_at'])
    op.create_index('ix_approval_requests_parent', 'approval_requests', ['parent_request_id'])
    op.create_index('ix_approval_requests_requester', 'approval_requests', ['requester_id', 'status'])
    op.create_index('ix_approval_requests_threshold_rule_id', 'approval_requests', ['threshold_rule_id'])
    op.create_index('ix_approval_requests_product_id', 'approval_requests', ['product_id'])

    op.create_table(
        'approval_counter_offers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('approval_request_id', sa.Integer(), nullable=False),
        sa.Column('created_by_id', sa.Integer(), nullable=False),
        sa.Column('delegation_id', sa.Integer(), nullable=True),
        sa.Column('approver_level', sa.String(length=32), nullable=False),
        sa.Column('price', sa.Numeric(12, 4), nullable=False),
        sa.Column('margin_value', sa.Numeric(12, 4), nullable=True),
        sa.Column('margin_percent', sa.Numeric(12, 4), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        _created_at(),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['approval_request_id'], ['approval_requests.id'], ),
        sa.ForeignKeyConstraint(['created_by_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['delegation_id'], ['approval_delegations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index(
        'ix_approval_counter_offers_request_status', 'approval_counter_offers',
        ['approval_request_id', 'status'],
    )

    # ============================================================================
    # override_audit_log: append-only
    # ============================================================================
    op.create_table(
        'override_audit_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('request_id', sa.Integer(), nullable=True),
        sa.Column('override_type', sa.String(length=32), nullable=True),
        sa.Column('threshold_rule_id', sa.Integer(), nullable=True),
        sa.Column('rule_snapshot', sa.JSON(), nullable=True),
        sa.Column('cashier_id', sa.Integer(), nullable=True),
        sa.Column('approver_id', sa.Integer(), nullable=True),
        sa.Column('approval_level', sa.String(length=32), nullable=True),
        sa.Column('required_level', sa.String(length=32), nullable=True),
        sa.Column('delegation_id', sa.Integer(), nullable=True),
        sa.Column('original_value', sa.Numeric(12, 4), nullable=True),
        sa.Column('override_value', sa.Numeric(12, 4), nullable=True),
        sa.Column('difference_value', sa.Numeric(12, 4), nullable=True),
        sa.Column('difference_percent', sa.Numeric(12, 4), nullable=True),
        sa.Column('verification_method', sa.String(length=16), nullable=True),
        sa.Column('outcome', sa.String(length=32), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('denial_reason', sa.Text(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['request_id'], ['approval_requests.id'], ),
        sa.ForeignKeyConstraint(['cashier_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['approver_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_override_audit_log_request_id', 'override_audit_log', ['request_id'])
    op.create_index('ix_override_audit_log_outcome', 'override_audit_log', ['outcome'])
    op.create_index('ix_override_audit_created', 'override_audit_log', ['created_at'])
    op.create_index('ix_override_audit_type_outcome', 'override_audit_log', ['override_type', 'outcome'])
    op.create_index('ix_override_audit_approver', 'override_audit_log', ['approver_id'])


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table('override_audit_log')
    op.drop_table('approval_counter_offers')
    op.drop_table('approval_requests')
    op.drop_table('manager_credentials')
    op.drop_table('approval_delegations')
    op.drop_table('override_rule_exceptions')
    op.drop_table('override_rule_levels')
    op.drop_table('override_threshold_rules')
    op.drop_table('session_tokens')
    op.drop_table('users')
