"""Management command to pull payment-request status for submitted invoices."""
import logging

from django.core.management.base import BaseCommand

from billing.exceptions import BillingError
from billing.models import Invoice
from billing.services.invoice_generator import InvoiceGenerator

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Sync processor status for pending and overdue invoices"

    def add_arguments(self, parser):
        parser.add_argument(
            '--organization-id',
            type=str,
            help='Specific organization ID to sync (optional)',
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Preview which invoices would be synced without making changes',
        )

    def handle(self, *args, **options):
        organization_id = options.get('organization_id')
        dry_run = options.get('dry_run', False)

        if dry_run:
            self.stdout.write(self.style.WARNING("DRY RUN MODE - No changes will be made"))

        invoices = Invoice.objects.filter(
            status__in=(Invoice.Status.PENDING, Invoice.Status.OVERDUE),
        ).exclude(external_invoice_ref='').order_by('due_date')

        if organization_id:
            invoices = invoices.filter(organization_id=organization_id)

        self.stdout.write(f"Found {invoices.count()} submitted invoices to check")

        generator = InvoiceGenerator()
        changed_count = 0
        error_count = 0

        for invoice in invoices:
            self.stdout.write(f"\nChecking invoice {invoice.id} for organization {invoice.organization_id}")
            self.stdout.write(f"  Payment request: {invoice.external_invoice_ref}")
            if dry_run:
                self.stdout.write("  (skipped - dry run)")
                continue
            try:
                outcome = generator.sync_status(invoice.pk, actor="command.sync_invoice_status")
            except BillingError as exc:
                error_count += 1
                self.stdout.write(self.style.ERROR(f"  ✗ Error: {exc.message}"))
                logger.error("Error syncing invoice %s: %s", invoice.id, exc)
                continue

            if outcome["changed"]:
                changed_count += 1
                self.stdout.write(self.style.SUCCESS(f"  → Status is now {outcome['status']}"))
            else:
                self.stdout.write(f"  ✓ Unchanged ({outcome['status']})")

        self.stdout.write("\n" + "=" * 50)
        if dry_run:
            self.stdout.write(self.style.WARNING("DRY RUN COMPLETE"))
        else:
            self.stdout.write(self.style.SUCCESS(f"Updated {changed_count} invoices"))
        if error_count:
            self.stdout.write(self.style.ERROR(f"Encountered {error_count} errors"))
