"""Shared fixtures for the pipeline tests."""

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from edusense.alerts import AlertDispatcher
from edusense.config import Settings
from edusense.mailer import MailSender
from edusense.models import EmailMessage
from edusense.reconciler import Reconciler
from edusense.risk import RiskScorer
from edusense.store import InMemoryStore

NOW = datetime(2025, 10, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Deterministic clock; each call moves forward one second."""

    def __init__(self, start: datetime = NOW):
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


class RecordingMailSender(MailSender):
    """Fake mail sender that records messages and can be told to fail."""

    def __init__(self):
        self.sent: List[EmailMessage] = []
        self.fail = False
        self.raise_error = False

    def send(self, message: EmailMessage) -> bool:
        if self.raise_error:
            raise ConnectionError("smtp down")
        if self.fail:
            return False
        self.sent.append(message)
        return True


def csv_bytes(header: str, *rows: str) -> bytes:
    return ("\n".join((header,) + rows) + "\n").encode("utf-8")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def settings():
    return Settings(bulk_send_delay=0.0)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def mail_sender():
    return RecordingMailSender()


@pytest.fixture
def reconciler(store, clock):
    return Reconciler(store, max_reported_errors=10, clock=clock)


@pytest.fixture
def scorer(store, settings, clock):
    return RiskScorer(store, settings, clock=clock)


@pytest.fixture
def dispatcher(store, mail_sender, settings, clock):
    return AlertDispatcher(store, mail_sender, settings, clock=clock, sleep=lambda seconds: None)
