"""
Organization billing access checks.

Only the organization owner, or a staff user, may read or change an
organization's billing state. Lookups raise billing errors so views render
them through the shared exception handler.
"""
import logging
from typing import Any

from organizations.models import Organization

from billing.exceptions import AuthorizationError, ValidationError
from billing.services.subscription_ledger import get_organization

logger = logging.getLogger(__name__)


def check_organization_billing_access(user, organization_id: Any) -> Organization:
    """
    Resolve ``organization_id`` and confirm ``user`` may manage its billing.

    Raises:
        ValidationError: organization id missing or malformed
        NotFoundError: organization does not exist
        AuthorizationError: user does not manage the organization
    """
    if not organization_id:
        raise ValidationError("organization_id is required.", details={"organization_id": "required"})

    organization = get_organization(organization_id)
    if not organization.is_managed_by(user):
        logger.info(
            "User %s denied billing access to organization %s.",
            getattr(user, "pk", None),
            organization.pk,
        )
        raise AuthorizationError(
            "You do not have permission to manage billing for this organization.",
            details={"organization_id": str(organization.pk)},
        )

    logger.debug("Billing access granted: user %s for organization %s", user.pk, organization.pk)
    return organization


def managed_organizations(user):
    """Organizations whose billing ``user`` may see."""
    if getattr(user, "is_staff", False):
        return Organization.objects.all()
    return Organization.objects.filter(owner=user)


__all__ = ["check_organization_billing_access", "managed_organizations"]
