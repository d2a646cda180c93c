"""Celery task resolving geolocation for a source IP"""

import logging

from dmarc_pipeline.celery_app import celery_app
from dmarc_pipeline.jobs.types import IP_ENRICHMENT_QUEUE
from dmarc_pipeline.services.enrichment import EnrichmentService
from dmarc_pipeline.services.geolocation import GeolocationClient, build_rate_limiter
from dmarc_pipeline.tasks.base import JobTask

logger = logging.getLogger(__name__)


class EnrichmentTask(JobTask):
    """Holds one rate limiter and API client per worker process"""

    _rate_limiter = None
    _client = None

    @property
    def rate_limiter(self):
        if self._rate_limiter is None:
            self._rate_limiter = build_rate_limiter()
        return self._rate_limiter

    @property
    def client(self):
        if self._client is None:
            self._client = GeolocationClient()
        return self._client


@celery_app.task(
    bind=True,
    base=EnrichmentTask,
    queue_name=IP_ENRICHMENT_QUEUE,
    name="dmarc_pipeline.tasks.enrichment.enrich_ip_task"
)
def enrich_ip_task(self, job_id: str, source_id: str, ip_address: str = None):
    def handler(queue, job):
        service = EnrichmentService(self.db, self.client, self.rate_limiter)
        result = service.enrich_source(source_id, ip_address)
        return {"status": result.status, "country": result.country}

    return self.run_job(job_id, handler)
