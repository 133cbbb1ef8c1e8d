import uuid

import billing.models
import django.core.validators
import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('organizations', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Subscription',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('plan_id', models.CharField(help_text='Catalog key of the current plan', max_length=64)),
                ('status', models.CharField(choices=[('trialing', 'Trialing'), ('active', 'Active'), ('past_due', 'Past Due'), ('canceled', 'Canceled'), ('paused', 'Paused'), ('incomplete', 'Incomplete')], default='active', max_length=20)),
                ('current_period_start', models.DateTimeField(blank=True, null=True)),
                ('current_period_end', models.DateTimeField(blank=True, null=True)),
                ('cancel_at_period_end', models.BooleanField(default=False, help_text='Cancel when the current period ends; does not change status by itself.')),
                ('canceled_at', models.DateTimeField(blank=True, null=True)),
                ('pending_plan_id', models.CharField(blank=True, help_text='Plan scheduled to replace the current one at period end.', max_length=64)),
                ('pending_billing_interval', models.CharField(blank=True, choices=[('monthly', 'Monthly'), ('annual', 'Annual')], max_length=10)),
                ('trial_start', models.DateTimeField(blank=True, null=True)),
                ('trial_end', models.DateTimeField(blank=True, null=True)),
                ('billing_interval', models.CharField(choices=[('monthly', 'Monthly'), ('annual', 'Annual')], default='monthly', max_length=10)),
                ('amount', models.PositiveIntegerField(default=0, help_text='Price per billing interval in minor units')),
                ('currency', models.CharField(default=billing.models._default_currency, max_length=3)),
                ('external_subscription_ref', models.CharField(blank=True, max_length=200)),
                ('external_customer_ref', models.CharField(blank=True, max_length=200)),
                ('payment_failure_count', models.PositiveIntegerField(default=0, help_text='Consecutive failed collection attempts since the last successful charge.')),
                ('version', models.PositiveIntegerField(default=1, help_text='Optimistic concurrency counter')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('organization', models.ForeignKey(help_text='Organization billed by this subscription', on_delete=django.db.models.deletion.PROTECT, related_name='subscriptions', to='organizations.organization')),
            ],
            options={
                'verbose_name': 'Subscription',
                'verbose_name_plural': 'Subscriptions',
                'db_table': 'billing_subscription',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['organization', 'status'], name='billing_sub_org_status_idx'),
                    models.Index(fields=['external_subscription_ref'], name='billing_sub_external_ref_idx'),
                    models.Index(fields=['current_period_end'], name='billing_sub_period_end_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('status', 'canceled'), _negated=True), fields=('organization',), name='unique_open_subscription_per_organization'),
                ],
            },
        ),
        migrations.CreateModel(
            name='UsageRecord',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('user_id', models.CharField(blank=True, max_length=64)),
                ('usage_type', models.CharField(choices=[('ai_conversation', 'Ai Conversation'), ('ai_message', 'Ai Message'), ('ai_token', 'Ai Token'), ('whatsapp_message_sent', 'Whatsapp Message Sent'), ('whatsapp_message_received', 'Whatsapp Message Received'), ('receipt_processed', 'Receipt Processed'), ('receipt_export', 'Receipt Export')], max_length=40)),
                ('quantity', models.PositiveBigIntegerField(validators=[django.core.validators.MinValueValidator(1)])),
                ('occurred_at', models.DateTimeField(help_text='First event time in the flushed bucket')),
                ('billing_period', models.CharField(help_text='YYYY-MM', max_length=7)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('flush_id', models.CharField(blank=True, help_text='Meter flush batch identifier', max_length=64)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('organization', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='usage_records', to='organizations.organization')),
            ],
            options={
                'verbose_name': 'Usage record',
                'verbose_name_plural': 'Usage records',
                'db_table': 'billing_usage_record',
                'ordering': ['-occurred_at'],
                'indexes': [
                    models.Index(fields=['organization', 'billing_period'], name='billing_usage_org_period_idx'),
                    models.Index(fields=['organization', 'usage_type', 'occurred_at'], name='billing_usage_org_type_idx'),
                    models.Index(fields=['flush_id'], name='billing_usage_flush_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('quantity__gt', 0)), name='usage_record_quantity_positive'),
                ],
            },
        ),
        migrations.CreateModel(
            name='UsageDailySummary',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('usage_type', models.CharField(max_length=40)),
                ('day', models.DateField()),
                ('quantity', models.PositiveBigIntegerField(default=0)),
                ('record_count', models.PositiveIntegerField(default=0)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('organization', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='usage_daily_summaries', to='organizations.organization')),
            ],
            options={
                'verbose_name': 'Usage daily summary',
                'verbose_name_plural': 'Usage daily summaries',
                'db_table': 'billing_usage_daily_summary',
                'ordering': ['-day', 'usage_type'],
                'constraints': [
                    models.UniqueConstraint(fields=('organization', 'usage_type', 'day'), name='unique_usage_summary_per_day'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Invoice',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('period_start', models.DateTimeField()),
                ('period_end', models.DateTimeField()),
                ('billing_period', models.CharField(help_text='YYYY-MM of period_start', max_length=7)),
                ('line_items', models.JSONField(blank=True, default=list)),
                ('subtotal', models.PositiveBigIntegerField(default=0)),
                ('total', models.PositiveBigIntegerField(default=0)),
                ('currency', models.CharField(default=billing.models._default_currency, max_length=3)),
                ('status', models.CharField(choices=[('draft', 'Draft'), ('pending', 'Pending'), ('paid', 'Paid'), ('overdue', 'Overdue'), ('cancelled', 'Cancelled')], default='draft', max_length=20)),
                ('external_invoice_ref', models.CharField(blank=True, help_text='Processor payment request code once submitted', max_length=200)),
                ('due_date', models.DateTimeField(blank=True, null=True)),
                ('submitted_at', models.DateTimeField(blank=True, null=True)),
                ('paid_at', models.DateTimeField(blank=True, null=True)),
                ('reminder_sent_at', models.DateTimeField(blank=True, null=True)),
                ('pdf_url', models.URLField(blank=True, max_length=512)),
                ('version', models.PositiveIntegerField(default=1)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('organization', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='invoices', to='organizations.organization')),
            ],
            options={
                'verbose_name': 'Invoice',
                'verbose_name_plural': 'Invoices',
                'db_table': 'billing_invoice',
                'ordering': ['-period_start', '-created_at'],
                'indexes': [
                    models.Index(fields=['organization', 'status'], name='billing_invoice_org_status_idx'),
                    models.Index(fields=['status', 'due_date'], name='billing_invoice_due_idx'),
                    models.Index(fields=['external_invoice_ref'], name='billing_invoice_external_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('organization', 'period_start', 'period_end'), name='unique_invoice_per_organization_period'),
                    models.CheckConstraint(condition=models.Q(('period_end__gt', models.F('period_start'))), name='invoice_period_ordered'),
                ],
            },
        ),
        migrations.CreateModel(
            name='PendingCharge',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('amount', models.PositiveIntegerField(validators=[django.core.validators.MinValueValidator(1)])),
                ('currency', models.CharField(default=billing.models._default_currency, max_length=3)),
                ('description', models.CharField(max_length=255)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('invoiced', 'Invoiced'), ('void', 'Void')], default='pending', max_length=20)),
                ('idempotency_key', models.CharField(max_length=255, unique=True)),
                ('details', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('invoice', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='pending_charges', to='billing.invoice')),
                ('organization', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='pending_charges', to='organizations.organization')),
                ('subscription', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='pending_charges', to='billing.subscription')),
            ],
            options={
                'verbose_name': 'Pending charge',
                'verbose_name_plural': 'Pending charges',
                'db_table': 'billing_pending_charge',
                'ordering': ['created_at'],
                'indexes': [
                    models.Index(fields=['organization', 'status'], name='billing_charge_org_status_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='PaymentRecord',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('reference', models.CharField(max_length=255, unique=True)),
                ('amount', models.PositiveBigIntegerField(default=0)),
                ('currency', models.CharField(default=billing.models._default_currency, max_length=3)),
                ('status', models.CharField(choices=[('success', 'Success'), ('failed', 'Failed')], max_length=20)),
                ('paid_at', models.DateTimeField(blank=True, null=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('invoice', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='payment_records', to='billing.invoice')),
                ('organization', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='payment_records', to='organizations.organization')),
                ('subscription', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='payment_records', to='billing.subscription')),
            ],
            options={
                'verbose_name': 'Payment record',
                'verbose_name_plural': 'Payment records',
                'db_table': 'billing_payment_record',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='WebhookEventRecord',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('external_event_id', models.CharField(max_length=255, unique=True)),
                ('event_type', models.CharField(blank=True, max_length=100)),
                ('status', models.CharField(choices=[('received', 'Received'), ('processing', 'Processing'), ('processed', 'Processed'), ('ignored', 'Ignored'), ('failed', 'Failed')], default='received', max_length=20)),
                ('received_at', models.DateTimeField(auto_now_add=True)),
                ('processed_at', models.DateTimeField(blank=True, null=True)),
                ('attempts', models.PositiveIntegerField(default=0)),
                ('last_error', models.TextField(blank=True)),
                ('organization', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='webhook_events', to='organizations.organization')),
            ],
            options={
                'verbose_name': 'Webhook event record',
                'verbose_name_plural': 'Webhook event records',
                'db_table': 'billing_webhook_event_record',
                'ordering': ['-received_at'],
                'indexes': [
                    models.Index(fields=['status'], name='webhook_record_status_idx'),
                    models.Index(fields=['event_type'], name='webhook_record_type_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='BillingJobRun',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('job_name', models.CharField(max_length=64)),
                ('period_key', models.CharField(max_length=32)),
                ('status', models.CharField(choices=[('running', 'Running'), ('completed', 'Completed'), ('partial', 'Partially Completed'), ('failed', 'Failed')], default='running', max_length=20)),
                ('started_at', models.DateTimeField()),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('processed', models.PositiveIntegerField(default=0)),
                ('errors', models.JSONField(blank=True, default=list)),
                ('attempts', models.PositiveIntegerField(default=1)),
            ],
            options={
                'verbose_name': 'Billing job run',
                'verbose_name_plural': 'Billing job runs',
                'db_table': 'billing_job_run',
                'ordering': ['-started_at'],
                'constraints': [
                    models.UniqueConstraint(fields=('job_name', 'period_key'), name='unique_billing_job_run_period'),
                ],
            },
        ),
        migrations.CreateModel(
            name='BillingAuditLog',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('event_type', models.CharField(help_text='Classification of the billing event.', max_length=100)),
                ('actor', models.CharField(blank=True, help_text='User or system actor responsible.', max_length=255)),
                ('request_id', models.CharField(blank=True, help_text='Correlation identifier for tracing.', max_length=255)),
                ('details', models.JSONField(blank=True, help_text='Structured data describing the event.', null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('organization', models.ForeignKey(help_text='Organization associated with the event.', on_delete=django.db.models.deletion.CASCADE, related_name='billing_audit_logs', to='organizations.organization')),
                ('subscription', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='audit_logs', to='billing.subscription')),
            ],
            options={
                'verbose_name': 'Billing audit log',
                'verbose_name_plural': 'Billing audit logs',
                'db_table': 'billing_audit_log',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['organization', 'event_type'], name='billing_audit_org_event_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='CancellationSurvey',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('reason', models.CharField(choices=[('too_expensive', 'Too expensive'), ('not_using', 'Not using it enough'), ('missing_features', 'Missing features'), ('switching_competitor', 'Switching to a competitor'), ('temporary_pause', 'Temporary pause'), ('business_closed', 'Business closed'), ('poor_support', 'Poor support'), ('technical_issues', 'Technical issues'), ('other', 'Other')], max_length=40)),
                ('other_reason', models.CharField(blank=True, max_length=500)),
                ('feedback', models.TextField(blank=True)),
                ('would_recommend', models.PositiveSmallIntegerField(blank=True, null=True, validators=[django.core.validators.MinValueValidator(1), django.core.validators.MaxValueValidator(10)])),
                ('willing_to_stay_with_discount', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('organization', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='cancellation_surveys', to='organizations.organization')),
                ('subscription', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='cancellation_surveys', to='billing.subscription')),
            ],
            options={
                'verbose_name': 'Cancellation survey',
                'verbose_name_plural': 'Cancellation surveys',
                'db_table': 'billing_cancellation_survey',
                'ordering': ['-created_at'],
            },
        ),
    ]
