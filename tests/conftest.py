"""Pytest configuration for share_links tests."""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest
from argon2 import PasswordHasher

from share_links.app.inmemory import InMemoryResourceDirectory, InMemoryShareLinkStore
from share_links.app.sharing.audit import InMemoryShareAuditEmitter
from share_links.app.sharing.credentials import PasswordVerifier
from share_links.app.sharing.service import ShareLinkService

OWNER_ID = 'user_1'
OTHER_USER_ID = 'user_2'
SNIPPET_ID = 'snip_1'


class FakeClock:
    """Settable UTC clock passed to the service as ``clock``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_verifier():
    """Argon2 verifier with minimal cost parameters."""
    return PasswordVerifier(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


@pytest.fixture
def store():
    return InMemoryShareLinkStore()


@pytest.fixture
def directory():
    resources = InMemoryResourceDirectory()
    resources.add(
        SNIPPET_ID,
        OWNER_ID,
        title='fizzbuzz.py',
        language='python',
        content='for i in range(1, 16): print(i)',
        owner_email='owner@example.com',
        versions=[{'rev': 1}],
    )
    return resources


@pytest.fixture
def audit():
    return InMemoryShareAuditEmitter()


@pytest.fixture
def service(store, directory, audit, clock, fast_verifier):
    return ShareLinkService(
        store,
        directory,
        verifier=fast_verifier,
        audit=audit,
        clock=clock,
        public_base_url='https://share.example.com',
    )
