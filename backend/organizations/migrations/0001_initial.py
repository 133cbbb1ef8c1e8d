import uuid

import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Organization',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, help_text='Unique identifier for the organization', primary_key=True, serialize=False)),
                ('name', models.CharField(help_text='Organization display name', max_length=200)),
                ('billing_email', models.EmailField(blank=True, help_text="Address used for invoices and billing reminders; falls back to the owner's email", max_length=254)),
                ('external_customer_ref', models.CharField(blank=True, help_text='Payment processor customer code', max_length=200)),
                ('seat_count', models.PositiveIntegerField(default=1, help_text='Number of billable users for per-user plans', validators=[django.core.validators.MinValueValidator(1), django.core.validators.MaxValueValidator(10000)])),
                ('is_active', models.BooleanField(default=True, help_text='Whether the organization is active')),
                ('created_at', models.DateTimeField(auto_now_add=True, help_text='Timestamp of organization creation')),
                ('updated_at', models.DateTimeField(auto_now=True, help_text='Timestamp of last organization modification')),
                ('owner', models.ForeignKey(help_text='User who created and owns this organization - has all billing permissions', on_delete=django.db.models.deletion.CASCADE, related_name='owned_organizations', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Organization',
                'verbose_name_plural': 'Organizations',
                'db_table': 'organization',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['owner', 'is_active'], name='organization_owner_active_idx'),
                    models.Index(fields=['external_customer_ref'], name='organization_customer_ref_idx'),
                ],
            },
        ),
    ]
