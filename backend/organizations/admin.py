"""Django admin configuration for organizations."""

from django.contrib import admin

from .models import Organization


@admin.register(Organization)
class OrganizationAdmin(admin.ModelAdmin):
    """Expose organization ownership and processor linkage."""

    list_display = ("name", "owner", "seat_count", "external_customer_ref", "is_active", "created_at")
    search_fields = ("id", "name", "owner__username", "owner__email", "billing_email", "external_customer_ref")
    list_filter = ("is_active", "created_at")
    readonly_fields = ("id", "created_at", "updated_at")
    raw_id_fields = ("owner",)
    ordering = ("-created_at",)
