"""
Source IP enrichment.

Resolution order, cheapest first:
1. Source missing or already enriched -> no-op (safe on replay)
2. Private/reserved address -> fixed "Private Network" classification
3. Another source row with the same IP already enriched -> copy it
4. External geolocation API, behind the rate limiter
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from dmarc_pipeline.metrics import record_geolocation_lookup
from dmarc_pipeline.models import Source
from dmarc_pipeline.services.geolocation import GeoLocation, GeolocationClient, RateLimiter
from dmarc_pipeline.utils.ip_utils import is_private_ip

logger = logging.getLogger(__name__)

PRIVATE_COUNTRY = "Private"
PRIVATE_ORGANIZATION = "Private Network"

GEO_FIELDS = (
    "country", "country_code", "region", "city", "asn", "organization", "latitude", "longitude"
)


@dataclass
class EnrichmentResult:
    status: str  # skipped, private, cached, resolved, not_found
    source_id: str
    country: Optional[str] = None


class EnrichmentService:
    """Fill in geolocation for one source row at a time"""

    def __init__(self, db: Session, client: GeolocationClient, rate_limiter: RateLimiter):
        self.db = db
        self.client = client
        self.rate_limiter = rate_limiter

    def enrich_source(self, source_id: str, ip_address: Optional[str] = None) -> EnrichmentResult:
        source = self.db.query(Source).filter(Source.id == source_id).first()
        if source is None or source.country is not None:
            return EnrichmentResult(status="skipped", source_id=source_id)

        ip = ip_address or source.source_ip

        if is_private_ip(ip):
            self._apply(source, GeoLocation(country=PRIVATE_COUNTRY, organization=PRIVATE_ORGANIZATION))
            record_geolocation_lookup("private")
            return EnrichmentResult(status="private", source_id=source_id, country=PRIVATE_COUNTRY)

        cached = self.db.query(Source).filter(
            Source.source_ip == ip,
            Source.id != source.id,
            Source.country.isnot(None),
        ).first()
        if cached is not None:
            self._apply(source, GeoLocation(**{f: getattr(cached, f) for f in GEO_FIELDS}))
            record_geolocation_lookup("cached")
            return EnrichmentResult(status="cached", source_id=source_id, country=cached.country)

        # RateLimitedError / TransientExternalError propagate to the job layer
        with self.rate_limiter.limit():
            geo = self.client.lookup(ip)

        if geo is None:
            record_geolocation_lookup("not_found")
            return EnrichmentResult(status="not_found", source_id=source_id)

        self._apply(source, geo)
        record_geolocation_lookup("api")
        logger.info(
            f"Resolved {ip} to {geo.country}",
            extra={"source_id": source_id, "asn": geo.asn}
        )
        return EnrichmentResult(status="resolved", source_id=source_id, country=geo.country)

    def _apply(self, source: Source, geo: GeoLocation) -> None:
        for name, value in geo.to_dict().items():
            setattr(source, name, value)
        self.db.commit()
