import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class BillingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "billing"
    verbose_name = "Billing"

    def ready(self):
        from billing.exceptions import CatalogConfigurationError
        from billing.services.plan_catalog import validate_catalog

        try:
            validate_catalog()
        except CatalogConfigurationError as exc:
            # Checkout and invoicing fail loudly on first use; start-up only reports.
            logger.error("Billing catalog configuration is invalid: %s", exc)
