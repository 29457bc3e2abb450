"""Unit tests for auth/store.py -- UserStore persistence.

Covers:
- create_user() lower-cases email and rejects duplicates
- get_by_email() is case-insensitive
- list_users() returns newest first
- count_users() / has_users() counting rules
- update_user() stamps updated_at, rejects unknown fields
- deactivate_user() / delete_user() report whether a row matched
- ping()
"""

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import UserStore

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    """Empty in-memory UserStore."""
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


def _add(store, email, name="Test User", **kwargs):
    return store.create_user(User(email=email, name=name, **kwargs))


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------


def test_create_assigns_id_and_timestamps(store):
    uid = _add(store, "Ada@Example.COM", "Ada", bio="Analyst")
    user = store.get_by_id(uid)
    assert user.id == uid
    assert user.email == "ada@example.com"
    assert user.bio == "Analyst"
    assert user.is_active is True
    assert user.created_at
    assert user.created_at == user.updated_at


def test_duplicate_email_raises(store):
    _add(store, "ada@example.com")
    with pytest.raises(IntegrityError):
        _add(store, "ADA@example.com")


def test_get_by_email_case_insensitive(store):
    uid = _add(store, "ada@example.com")
    assert store.get_by_email("  ADA@Example.com ").id == uid
    assert store.get_by_email("nobody@example.com") is None


def test_get_by_id_missing(store):
    assert store.get_by_id(42) is None


def test_list_users_newest_first(store):
    first = _add(store, "a@example.com")
    second = _add(store, "b@example.com")
    third = _add(store, "c@example.com")
    assert [u.id for u in store.list_users()] == [third, second, first]


def test_counts(store):
    assert store.has_users() is False
    assert store.count_users() == 0
    _add(store, "a@example.com")
    inactive = _add(store, "b@example.com")
    store.deactivate_user(inactive)
    assert store.has_users() is True
    assert store.count_users() == 1


# ---------------------------------------------------------------------------
# Update / deactivate / delete
# ---------------------------------------------------------------------------


def test_update_user(store):
    uid = _add(store, "a@example.com", "Old Name")
    before = store.get_by_id(uid)
    assert store.update_user(uid, name="New Name", bio=None, avatar_url="https://example.com/a.png") is True
    after = store.get_by_id(uid)
    assert after.name == "New Name"
    assert after.avatar_url == "https://example.com/a.png"
    assert after.email == before.email
    assert after.updated_at >= before.updated_at


def test_update_missing_user_returns_false(store):
    assert store.update_user(99, name="Nobody") is False


def test_update_rejects_unknown_field(store):
    uid = _add(store, "a@example.com")
    with pytest.raises(ValueError, match="email"):
        store.update_user(uid, email="other@example.com")


def test_deactivate(store):
    uid = _add(store, "a@example.com")
    assert store.deactivate_user(uid) is True
    assert store.get_by_id(uid).is_active is False
    assert store.deactivate_user(99) is False


def test_delete(store):
    uid = _add(store, "a@example.com")
    assert store.delete_user(uid) is True
    assert store.get_by_id(uid) is None
    assert store.delete_user(uid) is False


def test_ping(store):
    assert store.ping() is True
