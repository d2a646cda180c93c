"""Unit tests for cooperative cancellation tokens"""
import pytest

from dmarc_pipeline.jobs.cancellation import AccountStatusCancellationToken, NeverCancelled
from dmarc_pipeline.models import MailboxAccount


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def account(db_session, organization):
    account = MailboxAccount(
        organization_id=organization.id,
        email="dmarc@example.com",
        provider="gmail",
        access_token="token",
        sync_status="syncing",
    )
    db_session.add(account)
    db_session.commit()
    return account


def set_status(db_session, account, status):
    account.sync_status = status
    db_session.commit()


@pytest.mark.unit
class TestAccountStatusCancellationToken:
    """Test the account-status backed token"""

    def test_not_cancelled_while_syncing(self, db_session, account):
        token = AccountStatusCancellationToken(db_session, account.id, ttl=3.0, clock=Clock())
        assert token.is_cancelled() is False

    def test_status_is_cached_for_ttl(self, db_session, account):
        clock = Clock()
        token = AccountStatusCancellationToken(db_session, account.id, ttl=3.0, clock=clock)
        token.is_cancelled()

        set_status(db_session, account, "idle")
        clock.now = 2.0
        assert token.is_cancelled() is False

        clock.now = 3.5
        assert token.is_cancelled() is True

    def test_stays_cancelled(self, db_session, account):
        clock = Clock()
        token = AccountStatusCancellationToken(db_session, account.id, ttl=0, clock=clock)

        set_status(db_session, account, "idle")
        assert token.is_cancelled() is True

        set_status(db_session, account, "syncing")
        assert token.is_cancelled() is True

    def test_deleted_account_counts_as_cancelled(self, db_session, account):
        token = AccountStatusCancellationToken(db_session, account.id, clock=Clock())
        db_session.delete(account)
        db_session.commit()

        assert token.is_cancelled() is True


@pytest.mark.unit
def test_never_cancelled():
    assert NeverCancelled().is_cancelled() is False
