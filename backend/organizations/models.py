import uuid

from django.conf import settings
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models


class Organization(models.Model):
    """
    Organization model - Core entity for multi-tenant billing

    Represents a customer account that owns a subscription and accumulates
    metered usage. Each organization provides the billing scope for:
    - Plan subscription and lifecycle state
    - Usage metering across the bundled services
    - Invoicing and payment-processor customer linkage
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the organization"
    )
    name = models.CharField(
        max_length=200,
        help_text="Organization display name"
    )
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='owned_organizations',
        help_text="User who created and owns this organization - has all billing permissions"
    )
    billing_email = models.EmailField(
        blank=True,
        help_text="Address used for invoices and billing reminders; falls back to the owner's email"
    )
    external_customer_ref = models.CharField(
        max_length=200,
        blank=True,
        help_text="Payment processor customer code"
    )
    seat_count = models.PositiveIntegerField(
        default=1,
        validators=[MinValueValidator(1), MaxValueValidator(10000)],
        help_text="Number of billable users for per-user plans"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Whether the organization is active"
    )
    created_at = models.DateTimeField(
        auto_now_add=True,
        help_text="Timestamp of organization creation"
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="Timestamp of last organization modification"
    )

    class Meta:
        db_table = 'organization'
        verbose_name = 'Organization'
        verbose_name_plural = 'Organizations'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['owner', 'is_active'], name='organization_owner_active_idx'),
            models.Index(fields=['external_customer_ref'], name='organization_customer_ref_idx'),
        ]

    def __str__(self):
        return f"{self.name} ({self.owner.username})"

    @property
    def contact_email(self):
        """Resolve the address that should receive billing communication"""
        return self.billing_email or getattr(self.owner, "email", "") or ""

    def is_managed_by(self, user):
        """Check whether ``user`` may manage this organization's billing"""
        if not user or not user.is_authenticated:
            return False
        return user.is_staff or self.owner_id == user.pk
