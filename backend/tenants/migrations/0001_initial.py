import uuid

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
            name='Tenant',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, help_text='Unique identifier for the tenant', primary_key=True, serialize=False)),
                ('name', models.CharField(help_text='Agency display name', max_length=200)),
                ('slug', models.SlugField(help_text='URL-safe unique handle for the tenant', max_length=100, unique=True)),
                ('stripe_customer_id', models.CharField(blank=True, default='', help_text='Stripe customer that receives invoice items for this tenant', max_length=200)),
                ('is_active', models.BooleanField(default=True, help_text='Whether the tenant can use the platform')),
                ('billing_attention_required', models.BooleanField(default=False, help_text='Set when a billing charge failed and needs manual collection')),
                ('billing_attention_reason', models.TextField(blank=True, default='', help_text='Latest reason the tenant was flagged for manual billing follow-up')),
                ('billing_attention_at', models.DateTimeField(blank=True, help_text='When the tenant was last flagged for billing follow-up', null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('owner', models.ForeignKey(blank=True, help_text='User who created the tenant - has all billing permissions', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='owned_tenants', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Tenant',
                'verbose_name_plural': 'Tenants',
                'db_table': 'tenants_tenant',
                'ordering': ['name'],
                'indexes': [models.Index(fields=['billing_attention_required'], name='tenant_billing_attention_idx')],
            },
        ),
        migrations.CreateModel(
            name='Membership',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('role', models.CharField(choices=[('owner', 'Owner'), ('admin', 'Administrator'), ('member', 'Member'), ('viewer', 'Viewer')], help_text='Role determining user permissions within the tenant', max_length=20)),
                ('is_active', models.BooleanField(default=True, help_text='Whether this membership is currently active')),
                ('custom_permissions', models.JSONField(blank=True, default=dict, help_text='Per-member permission overrides, e.g. {"can_view_billing": true}')),
                ('assigned_at', models.DateTimeField(auto_now_add=True)),
                ('tenant', models.ForeignKey(help_text='The tenant this membership belongs to', on_delete=django.db.models.deletion.CASCADE, related_name='memberships', to='tenants.tenant')),
                ('user', models.ForeignKey(help_text='The user who is a member of the tenant', on_delete=django.db.models.deletion.CASCADE, related_name='tenant_memberships', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Tenant Membership',
                'verbose_name_plural': 'Tenant Memberships',
                'db_table': 'tenants_membership',
                'ordering': ['-assigned_at'],
                'indexes': [models.Index(fields=['tenant', 'role', 'is_active'], name='membership_tenant_role_idx')],
                'unique_together': {('tenant', 'user')},
            },
        ),
    ]
