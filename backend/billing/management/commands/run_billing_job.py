"""Management command to run a billing job from the shell or a system cron."""
import json
import logging

from django.core.management.base import BaseCommand, CommandError

from billing.exceptions import BillingError, JobAlreadyRunError
from billing.services.job_scheduler import JOB_NAMES, JobScheduler

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Run one billing job for a period, or every job that is currently due"

    def add_arguments(self, parser):
        parser.add_argument(
            'job',
            nargs='?',
            choices=JOB_NAMES,
            help='Job to run; omit together with --scheduled to run every due job',
        )
        parser.add_argument(
            '--period',
            type=str,
            help='Period key (YYYY-MM, YYYY-MM-DD or YYYY-MM-DDTHH depending on the job)',
        )
        parser.add_argument(
            '--scheduled',
            action='store_true',
            help='Run every job that is due now and not yet completed for its period',
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='List the organizations the job would touch without claiming the period',
        )

    def handle(self, *args, **options):
        job_name = options.get('job')
        period_key = options.get('period')
        dry_run = options.get('dry_run', False)
        scheduler = JobScheduler()

        if options.get('scheduled'):
            if dry_run:
                for name, key in scheduler.due_jobs():
                    self.stdout.write(f"{name} [{key}]")
                return
            outcome = scheduler.run_scheduled()
            self.stdout.write(json.dumps(outcome, indent=2, default=str))
            return

        if not job_name:
            raise CommandError("Provide a job name or --scheduled.")

        try:
            if dry_run:
                self.stdout.write(self.style.WARNING("DRY RUN MODE - No changes will be made"))
                organizations = scheduler.plan(job_name, period_key)
                self.stdout.write(f"{job_name} would touch {len(organizations)} organizations")
                for organization_id in organizations:
                    self.stdout.write(f"  {organization_id}")
                return
            result = scheduler.run(job_name, period_key)
        except JobAlreadyRunError as exc:
            self.stdout.write(self.style.WARNING(f"Skipped: {exc.message}"))
            return
        except BillingError as exc:
            raise CommandError(exc.message) from exc

        style = self.style.SUCCESS if not result.errors else self.style.ERROR
        self.stdout.write(style(f"{result.job_name} [{result.period_key}] {result.status}: {result.processed} processed"))
        for error in result.errors:
            self.stdout.write(self.style.ERROR(f"  ✗ {error.get('organization_id', '-')}: {error.get('error')}"))
