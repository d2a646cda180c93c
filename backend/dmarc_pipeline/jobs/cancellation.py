"""Cooperative cancellation for long-running jobs"""
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from sqlalchemy.orm import Session

from dmarc_pipeline.models import MailboxAccount

SYNCING = "syncing"


class CancellationToken(ABC):
    """Polled by a worker between units of work"""

    @abstractmethod
    def is_cancelled(self) -> bool:
        ...


class NeverCancelled(CancellationToken):
    def is_cancelled(self) -> bool:
        return False


class AccountStatusCancellationToken(CancellationToken):
    """
    A sync is cancelled once its account leaves ``syncing``.

    The status is read with a fresh query at most once per ``ttl`` seconds;
    once cancelled the token stays cancelled.
    """

    def __init__(
        self,
        db: Session,
        account_id: str,
        ttl: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.account_id = account_id
        self.ttl = ttl
        self.clock = clock
        self._checked_at: Optional[float] = None
        self._cancelled = False

    def is_cancelled(self) -> bool:
        if self._cancelled:
            return True

        now = self.clock()
        if self._checked_at is not None and now - self._checked_at < self.ttl:
            return False

        self._checked_at = now
        status = self.db.query(MailboxAccount.sync_status).filter(
            MailboxAccount.id == self.account_id
        ).scalar()
        self._cancelled = status != SYNCING
        return self._cancelled
