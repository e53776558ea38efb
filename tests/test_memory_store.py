from datetime import timedelta

import pytest

from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.memory import MemoryStore
from tokenward.storage.models import LockoutState, RevocationEntry, SessionRecord, utcnow


def _session(user_id, suffix="1", **overrides):
    now = utcnow()
    fields = dict(
        user_id=user_id,
        access_token=f"access-{suffix}",
        refresh_token=f"refresh-{suffix}",
        expires_at=now + timedelta(hours=2),
        refresh_expires_at=now + timedelta(days=7),
        now=now,
    )
    fields.update(overrides)
    return SessionRecord.new(**fields)


def test_memory_store_persists_credentials(tmp_path):
    store = MemoryStore(state_dir=str(tmp_path))
    credential = store.create_credential(
        "Persist@Example.com", "hash", firstname="Per", lastname="Sist", role="admin"
    )
    store.bump_token_version(credential.id)

    reloaded = MemoryStore(state_dir=str(tmp_path))

    restored = reloaded.get_credential(credential.id)
    assert restored is not None
    assert restored.email == "persist@example.com"
    assert restored.role == "admin"
    assert restored.token_version == 1
    assert reloaded.get_credential_by_email("PERSIST@example.com").id == credential.id


def test_duplicate_email_is_a_constraint_violation():
    store = MemoryStore()
    store.create_credential("dup@example.com", "hash")

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_credential(" DUP@example.com", "hash")
    assert excinfo.value.field == "email"


def test_reads_return_copies():
    store = MemoryStore()
    credential = store.create_credential("copy@example.com", "hash")

    fetched = store.get_credential(credential.id)
    fetched.token_version = 99

    assert store.get_credential(credential.id).token_version == 0


def test_update_password_bumps_version_and_clears_lockout():
    store = MemoryStore()
    credential = store.create_credential("pw@example.com", "hash")
    stamp = utcnow()
    store.apply_lockout(
        credential.id, lambda state: LockoutState(failed_attempts=5, locked_until=stamp)
    )

    updated = store.update_password(credential.id, "new-hash", now=stamp)

    assert updated.password_hash == "new-hash"
    assert updated.token_version == 1
    assert updated.failed_attempts == 0
    assert updated.locked_until is None
    assert updated.password_changed_at == stamp
    assert store.update_password("missing", "x") is None


def test_update_profile_reindexes_email():
    store = MemoryStore()
    credential = store.create_credential("old@example.com", "hash")
    store.create_credential("taken@example.com", "hash")

    store.update_profile(credential.id, email="New@Example.com", phone=None)

    assert store.get_credential_by_email("old@example.com") is None
    assert store.get_credential_by_email("new@example.com").id == credential.id
    with pytest.raises(ConstraintViolation):
        store.update_profile(credential.id, email="taken@example.com")
    with pytest.raises(ValueError):
        store.update_profile(credential.id, role="admin")


def test_insert_revocation_is_insert_if_absent():
    store = MemoryStore()
    now = utcnow()
    entry = RevocationEntry(
        token_hash="abc", user_id="u", reason="logout", expires_at=now, created_at=now
    )

    assert store.insert_revocation(entry) is True
    assert store.insert_revocation(entry) is False
    assert store.delete_expired_revocations(now) == 1
    assert store.get_revocation("abc") is None


def test_session_lifecycle():
    store = MemoryStore()
    credential = store.create_credential("s@example.com", "hash")
    session = store.create_session(_session(credential.id))

    assert store.get_session_by_access_token("access-1").id == session.id
    assert store.get_session_by_refresh_token("refresh-1").id == session.id
    assert store.touch_session(session.id, utcnow()) is True
    assert store.deactivate_session(session.id, "logout") is True
    assert store.deactivate_session(session.id, "logout") is False
    assert store.touch_session(session.id, utcnow()) is False
    assert store.list_sessions(credential.id, active_only=True) == []
    assert len(store.list_sessions(credential.id)) == 1


def test_session_requires_existing_credential():
    store = MemoryStore()

    with pytest.raises(ConstraintViolation):
        store.create_session(_session("ghost"))


def test_delete_credential_drops_sessions():
    store = MemoryStore()
    credential = store.create_credential("bye@example.com", "hash")
    store.create_session(_session(credential.id, "1"))
    store.create_session(_session(credential.id, "2"))

    assert store.delete_credential(credential.id) is True
    assert store.sessions == {}
    assert store.get_session_by_access_token("access-1") is None
    assert store.delete_credential(credential.id) is False
