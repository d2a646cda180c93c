"""create pipeline tables

Revision ID: 001
Revises:
Create Date: 2026-10-19

Creates the ingestion pipeline schema:
- tenancy: organizations, domains, mailbox_accounts, known_senders,
  user_sessions, data_exports
- reports, records, dkim_results, spf_results
- sources, subdomains: rolling per-domain aggregates
- alerts, webhooks, webhook_deliveries
- job_records: durable job bookkeeping
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column('id', sa.String(36), primary_key=True)


def _aggregate_columns():
    return [
        sa.Column('total_messages', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('passed_messages', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_messages', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('first_seen', sa.DateTime(), nullable=False),
        sa.Column('last_seen', sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    """Create pipeline tables"""

    op.create_table(
        'organizations',
        _id(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('data_retention_days', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'domains',
        _id(),
        sa.Column('organization_id', sa.String(36), nullable=False, index=True),
        sa.Column('domain', sa.String(255), nullable=False, index=True),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'mailbox_accounts',
        _id(),
        sa.Column('organization_id', sa.String(36), nullable=False, index=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False, server_default='gmail'),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('archive_label_id', sa.String(255), nullable=True),
        sa.Column('imap_host', sa.String(255), nullable=True),
        sa.Column('imap_port', sa.Integer(), nullable=True),
        sa.Column('imap_user', sa.String(255), nullable=True),
        sa.Column('imap_password', sa.String(255), nullable=True),
        sa.Column('imap_folder', sa.String(255), nullable=True),
        sa.Column('sync_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sync_status', sa.String(20), nullable=False, server_default='idle'),
        sa.Column('sync_progress', sa.JSON(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'known_senders',
        _id(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('ip_ranges', sa.JSON(), nullable=True),
        sa.Column('dkim_domains', sa.JSON(), nullable=True),
        sa.Column('is_global', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('organization_id', sa.String(36), nullable=True),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'user_sessions',
        _id(),
        sa.Column('user_id', sa.String(36), nullable=False, index=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False, index=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'data_exports',
        _id(),
        sa.Column('organization_id', sa.String(36), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('file_path', sa.String(1000), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, index=True),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'reports',
        _id(),
        sa.Column('domain_id', sa.String(36), nullable=False, index=True),
        sa.Column('report_id', sa.String(500), nullable=False, index=True),
        sa.Column('org_name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('extra_contact_info', sa.String(500), nullable=True),
        sa.Column('date_begin', sa.DateTime(), nullable=False),
        sa.Column('date_end', sa.DateTime(), nullable=False, index=True),
        sa.Column('policy_domain', sa.String(255), nullable=False),
        sa.Column('adkim', sa.String(1), nullable=True),
        sa.Column('aspf', sa.String(1), nullable=True),
        sa.Column('p', sa.String(20), nullable=False),
        sa.Column('sp', sa.String(20), nullable=True),
        sa.Column('pct', sa.Integer(), nullable=True),
        sa.Column('fo', sa.String(10), nullable=True),
        sa.Column('raw_xml', sa.Text(), nullable=True),
        sa.Column('external_message_id', sa.String(255), nullable=True, index=True),
        sa.Column('imported_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['domain_id'], ['domains.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('report_id', 'org_name', name='uq_reports_report_org'),
    )

    op.create_table(
        'records',
        _id(),
        sa.Column('report_id', sa.String(36), nullable=False, index=True),
        sa.Column('source_ip', sa.String(45), nullable=False, index=True),
        sa.Column('count', sa.Integer(), nullable=False),
        sa.Column('disposition', sa.String(20), nullable=False),
        sa.Column('dmarc_dkim', sa.String(10), nullable=True),
        sa.Column('dmarc_spf', sa.String(10), nullable=True),
        sa.Column('policy_override_reasons', sa.JSON(), nullable=True),
        sa.Column('header_from', sa.String(255), nullable=True),
        sa.Column('envelope_from', sa.String(255), nullable=True),
        sa.Column('envelope_to', sa.String(255), nullable=True),
        sa.ForeignKeyConstraint(['report_id'], ['reports.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'dkim_results',
        _id(),
        sa.Column('record_id', sa.String(36), nullable=False, index=True),
        sa.Column('domain', sa.String(255), nullable=False),
        sa.Column('selector', sa.String(255), nullable=True),
        sa.Column('result', sa.String(20), nullable=False),
        sa.Column('human_result', sa.String(255), nullable=True),
        sa.ForeignKeyConstraint(['record_id'], ['records.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'spf_results',
        _id(),
        sa.Column('record_id', sa.String(36), nullable=False, index=True),
        sa.Column('domain', sa.String(255), nullable=False),
        sa.Column('scope', sa.String(20), nullable=True),
        sa.Column('result', sa.String(20), nullable=False),
        sa.ForeignKeyConstraint(['record_id'], ['records.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'sources',
        _id(),
        sa.Column('domain_id', sa.String(36), nullable=False, index=True),
        sa.Column('source_ip', sa.String(45), nullable=False),
        *_aggregate_columns(),
        sa.Column('country', sa.String(100), nullable=True),
        sa.Column('country_code', sa.String(2), nullable=True),
        sa.Column('region', sa.String(100), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('asn', sa.String(20), nullable=True),
        sa.Column('organization', sa.String(255), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('known_sender_id', sa.String(36), nullable=True),
        sa.ForeignKeyConstraint(['domain_id'], ['domains.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['known_sender_id'], ['known_senders.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('domain_id', 'source_ip', name='uq_sources_domain_ip'),
    )
    op.create_index('ix_sources_source_ip', 'sources', ['source_ip'])

    op.create_table(
        'subdomains',
        _id(),
        sa.Column('domain_id', sa.String(36), nullable=False, index=True),
        sa.Column('subdomain', sa.String(255), nullable=False),
        *_aggregate_columns(),
        sa.ForeignKeyConstraint(['domain_id'], ['domains.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('domain_id', 'subdomain', name='uq_subdomains_domain_name'),
    )

    op.create_table(
        'alerts',
        _id(),
        sa.Column('organization_id', sa.String(36), nullable=False, index=True),
        sa.Column('domain_id', sa.String(36), nullable=True),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('fingerprint', sa.String(64), nullable=False, index=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['domain_id'], ['domains.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_alerts_domain_type_created', 'alerts', ['domain_id', 'type', 'created_at'])

    op.create_table(
        'webhooks',
        _id(),
        sa.Column('organization_id', sa.String(36), nullable=False, index=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('url', sa.String(500), nullable=False),
        sa.Column('type', sa.String(20), nullable=False, server_default='custom'),
        sa.Column('secret', sa.String(128), nullable=True),
        sa.Column('events', sa.JSON(), nullable=False),
        sa.Column('severity_filter', sa.JSON(), nullable=True),
        sa.Column('domain_filter', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), index=True),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_triggered_at', sa.DateTime(), nullable=True),
        sa.Column('last_failure_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'webhook_deliveries',
        _id(),
        sa.Column('webhook_id', sa.String(36), nullable=False, index=True),
        sa.Column('event', sa.String(50), nullable=False, index=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('response_body', sa.Text(), nullable=True),
        sa.Column('error_message', sa.String(500), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, index=True),
        sa.ForeignKeyConstraint(['webhook_id'], ['webhooks.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'job_records',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('queue', sa.String(50), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('state', sa.String(20), nullable=False, server_default='waiting'),
        sa.Column('attempts_made', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True, index=True),
    )
    op.create_index('ix_job_records_queue_state', 'job_records', ['queue', 'state'])


def downgrade() -> None:
    """Drop pipeline tables"""
    op.drop_index('ix_job_records_queue_state', table_name='job_records')
    op.drop_table('job_records')
    op.drop_table('webhook_deliveries')
    op.drop_table('webhooks')
    op.drop_index('ix_alerts_domain_type_created', table_name='alerts')
    op.drop_table('alerts')
    op.drop_table('subdomains')
    op.drop_index('ix_sources_source_ip', table_name='sources')
    op.drop_table('sources')
    op.drop_table('spf_results')
    op.drop_table('dkim_results')
    op.drop_table('records')
    op.drop_table('reports')
    op.drop_table('data_exports')
    op.drop_table('user_sessions')
    op.drop_table('known_senders')
    op.drop_table('mailbox_accounts')
    op.drop_table('domains')
    op.drop_table('organizations')
