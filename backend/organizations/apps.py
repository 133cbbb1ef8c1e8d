"""
Django application configuration for the organizations app.

Organizations are the billing tenants: every subscription, usage record and
invoice is scoped to exactly one organization.
"""

from django.apps import AppConfig


class OrganizationsConfig(AppConfig):
    """Application configuration for the organizations Django app."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'organizations'
    verbose_name = 'Organization Management'
