"""
Django application configuration for the tenants app.

Tenants are the agencies that subscribe to a plan and consume tokens. The app
owns the tenant record and the user memberships used for billing permissions.
"""

from django.apps import AppConfig


class TenantsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'tenants'
    verbose_name = 'Tenant Management'
