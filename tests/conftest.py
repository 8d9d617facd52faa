"""
Pytest configuration and shared fixtures for identity service tests.

Test Categories:
- unit: Fast tests against temporary SQLite databases (< 100ms each)
- slow: Concurrency tests that start several threads

Run categories:
- pytest -m unit              # Fast unit tests only
- pytest -m "not slow"        # Skip threaded tests
- pytest                      # All tests
"""
import pytest
from datetime import timedelta

from tests.fixtures.contact_data import BASE_TIME


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "slow: Slow tests (threads, timeouts)")


@pytest.fixture
def temp_db(tmp_path):
    """Path to a fresh SQLite database file."""
    return str(tmp_path / "contacts.db")


@pytest.fixture
def store(temp_db):
    """ContactStore backed by a temporary database."""
    from api.services.contact_store import ContactStore
    return ContactStore(db_path=temp_db, timeout=5.0)


@pytest.fixture
def resolver(store):
    """IdentityResolver with its own lock manager and the temporary store."""
    from api.services.identity_lock import IdentityLockManager
    from api.services.identity_resolver import IdentityResolver
    return IdentityResolver(store=store, lock_manager=IdentityLockManager(timeout=5.0))


@pytest.fixture
def seed(store):
    """
    Insert contacts with controlled creation times.

    Usage:
        p1 = seed("a@x.com", "111")                       # primary at BASE_TIME
        s2 = seed("b@x.com", "111", linked_id=p1.id, minutes=5)
    """
    from api.services.contact_store import ContactInsertData, LinkPrecedence

    def _seed(email, phone_number, linked_id=None, minutes=0):
        precedence = LinkPrecedence.SECONDARY if linked_id is not None else LinkPrecedence.PRIMARY
        return store.insert(
            ContactInsertData(
                email=email,
                phone_number=phone_number,
                linked_id=linked_id,
                link_precedence=precedence,
            ),
            created_at=BASE_TIME + timedelta(minutes=minutes),
        )

    return _seed


@pytest.fixture(autouse=True)
def reset_singletons_after_test():
    """Drop singletons so patched stores never leak between tests."""
    yield
    from tests.reset_singletons import reset_all_singletons
    reset_all_singletons()
