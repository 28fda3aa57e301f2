import uuid
from decimal import Decimal

import billing.models
import django.core.validators
import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('tenants', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='TokenPricing',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('action_type', models.CharField(db_index=True, help_text='Identifier feature modules pass when requesting authorization', max_length=100)),
                ('version', models.PositiveIntegerField(default=1, help_text='Catalog version; a price change publishes a new version')),
                ('display_name', models.CharField(max_length=200)),
                ('description', models.TextField(blank=True)),
                ('category', models.CharField(choices=[('transcription', 'Transcription'), ('proposal', 'Proposal'), ('email', 'Email'), ('crm', 'CRM'), ('export', 'Export'), ('analytics', 'Analytics'), ('other', 'Other')], default='other', help_text='Grouping used for usage analytics', max_length=20)),
                ('token_cost', models.PositiveIntegerField(help_text='Tokens debited each time the action runs')),
                ('is_active', models.BooleanField(default=True, help_text='Only the active version of an action type is priced')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Token pricing',
                'verbose_name_plural': 'Token pricing',
                'db_table': 'billing_token_pricing',
                'ordering': ['category', 'token_cost', 'action_type'],
                'constraints': [
                    models.UniqueConstraint(fields=('action_type', 'version'), name='unique_token_pricing_version'),
                    models.UniqueConstraint(condition=models.Q(('is_active', True)), fields=('action_type',), name='unique_active_token_pricing'),
                ],
            },
        ),
        migrations.CreateModel(
            name='SubscriptionPlan',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.SlugField(max_length=100, unique=True)),
                ('display_name', models.CharField(max_length=200)),
                ('description', models.TextField(blank=True)),
                ('monthly_price', models.DecimalField(decimal_places=2, help_text='Monthly subscription price in billing currency', max_digits=10, validators=[django.core.validators.MinValueValidator(0)])),
                ('annual_price', models.DecimalField(decimal_places=2, default=Decimal('0.00'), help_text='Annual subscription price in billing currency', max_digits=10, validators=[django.core.validators.MinValueValidator(0)])),
                ('monthly_tokens', models.PositiveIntegerField(help_text='Tokens granted each monthly period')),
                ('annual_tokens', models.PositiveIntegerField(default=0, help_text='Tokens granted per year on annual billing; sliced monthly')),
                ('currency', models.CharField(default=billing.models._default_currency, max_length=10)),
                ('overage_token_cost', models.DecimalField(decimal_places=4, help_text='Price charged per token consumed below a zero balance', max_digits=10, validators=[django.core.validators.MinValueValidator(0)])),
                ('allow_overage', models.BooleanField(default=True, help_text='Whether subscribers may consume into a negative balance')),
                ('overage_token_limit', models.PositiveIntegerField(blank=True, help_text='Deepest negative balance allowed under overage; empty means unbounded', null=True)),
                ('features', models.JSONField(blank=True, default=dict)),
                ('is_active', models.BooleanField(default=True)),
                ('sort_order', models.PositiveSmallIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Subscription plan',
                'verbose_name_plural': 'Subscription plans',
                'db_table': 'billing_subscription_plan',
                'ordering': ['sort_order', 'monthly_price', 'name'],
            },
        ),
        migrations.CreateModel(
            name='TenantSubscription',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('status', models.CharField(choices=[('trialing', 'Trialing'), ('active', 'Active'), ('past_due', 'Past Due'), ('canceled', 'Canceled')], default='active', max_length=20)),
                ('billing_interval', models.CharField(choices=[('month', 'Monthly'), ('year', 'Annual')], default='month', max_length=10)),
                ('token_balance', models.IntegerField(default=0, help_text='Current balance; negative values are overage debt')),
                ('monthly_allocation', models.PositiveIntegerField(help_text='Tokens granted at each period rollover')),
                ('tokens_used_this_period', models.PositiveIntegerField(default=0)),
                ('lifetime_tokens_used', models.PositiveBigIntegerField(default=0)),
                ('current_period_start', models.DateTimeField()),
                ('current_period_end', models.DateTimeField()),
                ('overage_token_cost', models.DecimalField(decimal_places=4, max_digits=10)),
                ('allow_overage', models.BooleanField(default=True)),
                ('overage_token_limit', models.PositiveIntegerField(blank=True, null=True)),
                ('trial_ends_at', models.DateTimeField(blank=True, null=True)),
                ('cancel_at_period_end', models.BooleanField(default=False)),
                ('canceled_at', models.DateTimeField(blank=True, null=True)),
                ('ledger_sequence', models.PositiveBigIntegerField(default=0, help_text='Sequence number of the latest ledger transaction')),
                ('last_rollover_period_end', models.DateTimeField(blank=True, help_text='Period boundary most recently rolled over', null=True)),
                ('debits_frozen', models.BooleanField(default=False, help_text='Set when ledger verification failed; debits are refused until reconciled')),
                ('frozen_reason', models.TextField(blank=True)),
                ('frozen_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('plan', models.ForeignKey(help_text='Current plan in use', on_delete=django.db.models.deletion.PROTECT, related_name='subscriptions', to='billing.subscriptionplan')),
                ('tenant', models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name='token_subscription', to='tenants.tenant')),
            ],
            options={
                'verbose_name': 'Tenant subscription',
                'verbose_name_plural': 'Tenant subscriptions',
                'db_table': 'billing_tenant_subscription',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['status', 'current_period_end'], name='billing_sub_status_period_idx')],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('current_period_end__gt', models.F('current_period_start'))), name='tenant_subscription_period_order'),
                ],
            },
        ),
        migrations.CreateModel(
            name='TokenTransaction',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('sequence', models.PositiveBigIntegerField(help_text='Position of the transaction in the subscription ledger')),
                ('type', models.CharField(choices=[('consume', 'Consume'), ('allocation', 'Allocation'), ('refill', 'Refill'), ('bonus', 'Bonus'), ('overage_charge', 'Overage charge'), ('plan_adjustment', 'Plan adjustment')], help_text='Categorisation of the token movement', max_length=20)),
                ('tokens', models.IntegerField(help_text='Signed token delta; positive for credits, negative for debits')),
                ('balance_before', models.IntegerField()),
                ('balance_after', models.IntegerField()),
                ('action_type', models.CharField(blank=True, max_length=100)),
                ('action_id', models.CharField(blank=True, help_text='Identifier of the feature-module object the tokens were spent on', max_length=255)),
                ('description', models.TextField(blank=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('metadata_version', models.PositiveSmallIntegerField(default=1)),
                ('idempotency_key', models.CharField(blank=True, help_text='Unique key to guarantee idempotent transaction writes', max_length=255, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('pricing', models.ForeignKey(blank=True, help_text='Catalog version that priced a consume transaction', null=True, on_delete=django.db.models.deletion.PROTECT, related_name='transactions', to='billing.tokenpricing')),
                ('subscription', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='transactions', to='billing.tenantsubscription')),
                ('tenant', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='token_transactions', to='tenants.tenant')),
            ],
            options={
                'verbose_name': 'Token transaction',
                'verbose_name_plural': 'Token transactions',
                'db_table': 'billing_token_transaction',
                'ordering': ['-created_at', '-sequence'],
                'indexes': [
                    models.Index(fields=['tenant', 'created_at'], name='billing_tx_tenant_created_idx'),
                    models.Index(fields=['tenant', 'type', 'created_at'], name='billing_tx_tenant_type_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('tokens', 0), _negated=True), name='token_transaction_non_zero'),
                    models.CheckConstraint(condition=models.Q(('balance_after', models.F('balance_before') + models.F('tokens'))), name='token_transaction_balance_chain'),
                    models.UniqueConstraint(fields=('subscription', 'sequence'), name='unique_token_transaction_sequence'),
                    models.UniqueConstraint(condition=models.Q(('idempotency_key__isnull', False)), fields=('idempotency_key',), name='unique_token_transaction_idempotency_key'),
                ],
            },
        ),
        migrations.CreateModel(
            name='BillingCharge',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('kind', models.CharField(choices=[('overage', 'Overage'), ('plan_proration', 'Plan proration')], max_length=20)),
                ('amount', models.DecimalField(decimal_places=4, help_text='Signed amount; negative values are credits owed to the tenant', max_digits=12)),
                ('currency', models.CharField(default=billing.models._default_currency, max_length=10)),
                ('tokens', models.IntegerField(default=0, help_text='Tokens the charge was computed from')),
                ('unit_rate', models.DecimalField(blank=True, decimal_places=4, help_text='Per-token rate applied for overage charges', max_digits=10, null=True)),
                ('description', models.CharField(blank=True, max_length=255)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('submitted', 'Submitted'), ('failed', 'Failed'), ('skipped', 'Skipped')], default='pending', max_length=20)),
                ('attempts', models.PositiveIntegerField(default=0)),
                ('external_reference', models.CharField(blank=True, help_text='Invoicing provider identifier once submitted', max_length=255)),
                ('failure_reason', models.TextField(blank=True)),
                ('idempotency_key', models.CharField(max_length=255, unique=True)),
                ('submitted_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('subscription', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='billing_charges', to='billing.tenantsubscription')),
                ('tenant', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='billing_charges', to='tenants.tenant')),
                ('token_transaction', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='billing_charges', to='billing.tokentransaction')),
            ],
            options={
                'verbose_name': 'Billing charge',
                'verbose_name_plural': 'Billing charges',
                'db_table': 'billing_charge',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status', 'created_at'], name='billing_charge_status_idx'),
                    models.Index(fields=['tenant', 'kind'], name='billing_charge_tenant_kind_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='BillingAuditLog',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('event_type', models.CharField(help_text='Classification of the billing event.', max_length=100)),
                ('actor', models.CharField(blank=True, help_text='Auth user or system actor responsible.', max_length=255)),
                ('request_id', models.CharField(blank=True, help_text='Correlation or request identifier for tracing.', max_length=255)),
                ('details', models.JSONField(blank=True, help_text='Structured data describing the event.', null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('tenant', models.ForeignKey(help_text='Tenant associated with the event.', on_delete=django.db.models.deletion.CASCADE, related_name='billing_audit_logs', to='tenants.tenant')),
            ],
            options={
                'verbose_name': 'Billing audit log',
                'verbose_name_plural': 'Billing audit logs',
                'db_table': 'billing_audit_log',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['tenant', 'event_type'], name='billing_audit_tenant_event_idx')],
            },
        ),
    ]
