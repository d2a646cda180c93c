"""Match sending IPs against known sender infrastructure"""
import logging
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from dmarc_pipeline.models import KnownSender
from dmarc_pipeline.utils.ip_utils import ip_in_range

logger = logging.getLogger(__name__)


class KnownSenderMatcher:
    """Global and organization-specific senders, loaded once per evaluation"""

    def __init__(self, db: Session, organization_id: str):
        self.senders: List[KnownSender] = db.query(KnownSender).filter(
            or_(
                KnownSender.is_global.is_(True),
                KnownSender.organization_id == organization_id,
            )
        ).all()

    def match_ip(self, ip: str) -> Optional[KnownSender]:
        for sender in self.senders:
            for cidr in sender.ip_ranges or []:
                if ip_in_range(ip, cidr):
                    return sender
        return None

    def match_dkim_domain(self, dkim_domain: str) -> Optional[KnownSender]:
        """Exact or parent-domain match, e.g. mail.google.com -> google.com"""
        candidate = dkim_domain.lower()
        for sender in self.senders:
            for known in sender.dkim_domains or []:
                known = known.lower()
                if candidate == known or candidate.endswith("." + known):
                    return sender
        return None
