"""
IP geolocation through the ip-api.com JSON API, and the rate limiters that
space calls to it.

The free endpoint allows 45 requests per minute per client address, so every
lookup goes through a limiter enforcing a minimum interval between calls.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Optional

import httpx
import redis

from dmarc_pipeline.config import get_settings
from dmarc_pipeline.exceptions import RateLimitedError, TransientExternalError

logger = logging.getLogger(__name__)

IP_API_FIELDS = (
    "status,message,country,countryCode,region,regionName,city,zip,"
    "lat,lon,timezone,isp,org,as,query"
)


@dataclass
class GeoLocation:
    country: Optional[str] = None
    country_code: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    asn: Optional[str] = None
    organization: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def to_dict(self) -> Dict:
        return asdict(self)


def parse_asn(as_field: Optional[str]) -> Optional[str]:
    """'AS15169 Google LLC' -> 'AS15169'"""
    if not as_field:
        return None
    head = as_field.strip().split(" ", 1)[0]
    return head if head.upper().startswith("AS") else None


class RateLimiter:
    """
    Single-flight limiter with a minimum spacing between call starts.

    The lock is held for the whole call, so at most one lookup is in flight
    per limiter. Clock and sleep are injectable for tests.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self.clock = clock
        self.sleep = sleep
        self._lock = threading.Lock()
        self._last_call: Optional[float] = None

    @contextmanager
    def limit(self):
        with self._lock:
            if self._last_call is not None:
                wait = self._last_call + self.min_interval - self.clock()
                if wait > 0:
                    self.sleep(wait)
            self._last_call = self.clock()
            yield


class RedisRateLimiter:
    """
    Cross-process spacing: a call may start only after winning a Redis slot
    key that expires after ``min_interval``.
    """

    def __init__(
        self,
        client: redis.Redis,
        min_interval: float,
        key: str = "dmarc:geolocation:slot",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.min_interval = min_interval
        self.key = key
        self.sleep = sleep

    @contextmanager
    def limit(self):
        slot_ms = int(self.min_interval * 1000)
        while not self.client.set(self.key, "1", nx=True, px=slot_ms):
            ttl_ms = self.client.pttl(self.key)
            self.sleep(ttl_ms / 1000 if ttl_ms and ttl_ms > 0 else 0.05)
        yield


def build_rate_limiter(settings=None):
    settings = settings or get_settings()
    if settings.geolocation_shared_rate_limit:
        return RedisRateLimiter(
            redis.from_url(settings.redis_url, socket_connect_timeout=5, socket_timeout=5),
            settings.geolocation_min_interval_seconds,
        )
    return RateLimiter(settings.geolocation_min_interval_seconds)


class GeolocationClient:
    """Thin ip-api.com client; one lookup per call, no caching"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.geolocation_api_url).rstrip("/")
        self.http = http_client or httpx.Client(
            timeout=timeout or settings.geolocation_timeout_seconds
        )

    def lookup(self, ip_address: str) -> Optional[GeoLocation]:
        """
        Resolve an IP address.

        Returns:
            GeoLocation, or None when the API has no data for the address

        Raises:
            RateLimitedError: the API answered 429
            TransientExternalError: network failure or unexpected status
        """
        try:
            response = self.http.get(
                f"{self.base_url}/{ip_address}",
                params={"fields": IP_API_FIELDS},
            )
        except httpx.HTTPError as e:
            raise TransientExternalError(f"Geolocation request failed for {ip_address}: {e}") from e

        if response.status_code == 429:
            ttl = response.headers.get("X-Ttl")
            raise RateLimitedError(
                f"Geolocation API rate limited lookup of {ip_address}",
                retry_after=float(ttl) if ttl and ttl.isdigit() else None,
            )
        if response.status_code != 200:
            raise TransientExternalError(
                f"Geolocation API returned {response.status_code} for {ip_address}",
                status_code=response.status_code,
            )

        data = response.json()
        if data.get("status") != "success":
            logger.info(
                f"No geolocation for {ip_address}: {data.get('message', 'unknown')}",
                extra={"ip": ip_address}
            )
            return None

        return GeoLocation(
            country=data.get("country"),
            country_code=data.get("countryCode"),
            region=data.get("regionName") or data.get("region"),
            city=data.get("city"),
            asn=parse_asn(data.get("as")),
            organization=data.get("org") or data.get("isp"),
            latitude=data.get("lat"),
            longitude=data.get("lon"),
        )

    def close(self):
        self.http.close()
