"""Cron-facing endpoint that lists and triggers billing jobs."""
from __future__ import annotations

import hmac
import logging

from django.conf import settings
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework.permissions import AllowAny
from rest_framework.views import APIView

from billing.clock import get_clock
from billing.exceptions import JobAlreadyRunError
from billing.filters import BillingJobRunFilter
from billing.models import BillingJobRun
from billing.serializers import BillingJobRunSerializer, JobRunRequestSerializer
from billing.services.job_scheduler import JOB_DESCRIPTIONS, JOB_NAMES, RUN_SCHEDULED, JobScheduler, default_period_key
from billing.views.base import BillingMetricsMixin

logger = logging.getLogger(__name__)

RECENT_RUNS = 50


@method_decorator(csrf_exempt, name="dispatch")
class BillingJobView(BillingMetricsMixin, APIView):
    authentication_classes = []
    permission_classes = [AllowAny]
    endpoint_label = "billing.jobs"

    def get(self, request):
        now = get_clock().now()
        latest = {}
        for job_run in BillingJobRun.objects.filter(job_name__in=JOB_NAMES).order_by("-started_at"):
            latest.setdefault(job_run.job_name, job_run)

        jobs = []
        for job_name in JOB_NAMES:
            last_run = latest.get(job_name)
            jobs.append(
                {
                    "name": job_name,
                    "description": JOB_DESCRIPTIONS[job_name],
                    "default_period": default_period_key(job_name, now),
                    "last_run": BillingJobRunSerializer(last_run).data if last_run else None,
                }
            )
        runs = BillingJobRunFilter(request.query_params, queryset=BillingJobRun.objects.order_by("-started_at")).qs[:RECENT_RUNS]
        return self._success_response(
            {"jobs": jobs, "recent_runs": BillingJobRunSerializer(runs, many=True).data},
        )

    def post(self, request):
        if not self._authorized(request):
            logger.warning("Rejected billing job trigger with a missing or invalid bearer token.")
            return self._error_response(status=401, code="unauthorized", message="Invalid job credentials.")

        data = self._validated(JobRunRequestSerializer, request.data)
        job_name = data["job"]
        period_key = data.get("billing_period") or None
        if job_name == RUN_SCHEDULED:
            outcome = JobScheduler().run_scheduled()
            return self._success_response({"job_name": job_name, **outcome}, message="billing.job.scheduled_triggered")

        try:
            result = JobScheduler().run(job_name, period_key)
        except JobAlreadyRunError as exc:
            return self._success_response(
                {
                    "skipped": True,
                    "job_name": job_name,
                    "reason": exc.message,
                    "job_run": BillingJobRunSerializer(exc.job_run).data if exc.job_run else None,
                }
            )
        return self._success_response(result.as_dict(), message="billing.job.triggered")

    @staticmethod
    def _authorized(request) -> bool:
        secret = getattr(settings, "BILLING_JOBS_SECRET", "")
        if not secret:
            return False
        header = request.headers.get("Authorization", "")
        return hmac.compare_digest(header.encode("utf-8"), f"Bearer {secret}".encode("utf-8"))
