from datetime import datetime, timedelta, timezone

import pytest

from tessera.storage.errors import ConstraintViolation
from tessera.storage.memory import MemoryStore
from tessera.storage.models import AuditLogEntry, Session


def _now():
    return datetime.now(timezone.utc)


def _user(store, email="dana@example.com"):
    return store.create_user(email, "hash", "argon2id", first_name="Dana", last_name="Scully")


def test_fresh_store_is_seeded_with_default_roles():
    store = MemoryStore()

    assert {role.name for role, _ in store.list_roles(_now())} == {"admin", "manager", "user"}
    assert len(store.list_permissions()) == 13


def test_email_uniqueness_is_case_insensitive():
    store = MemoryStore()
    _user(store)

    with pytest.raises(ConstraintViolation) as exc_info:
        _user(store, "DANA@example.com")

    assert exc_info.value.field == "email"


def test_transaction_rolls_back_on_error():
    store = MemoryStore()

    with pytest.raises(RuntimeError):
        with store.transaction():
            _user(store)
            raise RuntimeError("boom")

    assert store.get_user_by_email("dana@example.com") is None


def test_nested_transaction_rolls_back_only_inner_block():
    store = MemoryStore()

    with store.transaction():
        user = _user(store)
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.append_audit_entry(AuditLogEntry(action="x", success=True))
                raise RuntimeError("audit failed")

    assert store.get_user(user.id) is not None
    assert store.list_audit_entries() == []


def test_redeem_refresh_token_is_single_use():
    store = MemoryStore()
    user = _user(store)
    session = Session.new(user.id, "jti-1", 60)
    store.create_session(session)
    store.create_refresh_token("hash-1", user.id, session.session_id, _now() + timedelta(days=1))

    first = store.redeem_refresh_token("hash-1", _now())
    second = store.redeem_refresh_token("hash-1", _now())

    assert first is not None and first.used_at is not None
    assert second is None


def test_refresh_token_requires_existing_session():
    store = MemoryStore()
    user = _user(store)

    with pytest.raises(ConstraintViolation):
        store.create_refresh_token("hash-1", user.id, "missing-session", _now())


def test_jti_is_unique_across_sessions():
    store = MemoryStore()
    user = _user(store)
    store.create_session(Session.new(user.id, "jti-1", 60))

    with pytest.raises(ConstraintViolation):
        store.create_session(Session.new(user.id, "jti-1", 60))


def test_only_one_active_signing_key():
    from tessera.storage.models import SigningKeyRecord

    store = MemoryStore()
    store.save_signing_key(SigningKeyRecord("k1", "RS256", "pub", "priv"))

    with pytest.raises(ConstraintViolation):
        store.save_signing_key(SigningKeyRecord("k2", "RS256", "pub", "priv"))

    now = _now()
    store.rotate_signing_key(
        SigningKeyRecord("k2", "RS256", "pub", "priv"),
        rotated_at=now,
        verify_until=now + timedelta(hours=1),
    )
    assert store.get_active_signing_key().key_id == "k2"
    retired = store.get_signing_key("k1")
    assert retired.is_active is False
    assert retired.expires_at == now + timedelta(hours=1)
    assert [k.key_id for k in store.list_verification_keys(now)] == ["k2", "k1"]


def test_login_failure_counter_caps_at_threshold():
    store = MemoryStore()
    user = _user(store)
    until = _now() + timedelta(minutes=30)

    results = [
        store.record_login_failure(user.id, max_attempts=3, lockout_until=until)
        for _ in range(4)
    ]

    assert [attempts for attempts, _ in results] == [1, 2, 3, 3]
    assert results[1][1] is None
    assert results[2][1] == until


def test_state_persists_across_instances(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _user(store)
    session = Session.new(user.id, "jti-1", 60)
    store.create_session(session)
    store.close()

    reloaded = MemoryStore(fs_root=str(tmp_path))

    restored = reloaded.get_user_by_email("dana@example.com")
    assert restored is not None
    assert restored.created_at == user.created_at
    assert reloaded.get_session(session.session_id).expires_at == session.expires_at
    assert reloaded.get_role("admin") is not None
    # Sequences continue rather than reusing ids
    assert _user(reloaded, "eve@example.com").id == user.id + 1
