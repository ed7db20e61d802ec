"""Unit tests for signing keys and access/refresh tokens."""

import asyncio
import threading
import uuid
from datetime import timedelta

import jwt
import pytest

from tessera.service.errors import (
    InvalidTokenError,
    SessionRevokedError,
    SigningUnavailableError,
    TokenExpiredError,
)
from tessera.service.keys import KeyManager
from tessera.storage.errors import StoreUnavailable
from tessera.storage.models import Session, utcnow


def _open_session(store, tokens, user_id, *, now=None):
    """Issue an access token bound to a freshly stored session."""
    user = store.get_user(user_id)
    session = Session.new(user.id, str(uuid.uuid4()), 60, now=now)
    issued = tokens.issue_access_token(
        user,
        roles=["user"],
        permissions=["data.read"],
        session_id=session.session_id,
        jti=session.jwt_jti,
        now=now,
    )
    store.create_session(session)
    return session, issued


class TestKeyManager:
    """Tests for key creation, persistence and rotation."""

    def test_requires_master_secret(self, store):
        with pytest.raises(SigningUnavailableError):
            KeyManager(store, master_secret="")

    def test_first_use_creates_and_persists_key(self, keys, store):
        pair = keys.get_active_key_pair()
        record = store.get_active_signing_key()

        assert record is not None
        assert record.key_id == pair.key_id
        assert record.algorithm == "RS256"
        assert "PRIVATE KEY" not in record.private_key_encrypted

    def test_key_survives_restart(self, keys, store, settings):
        """A second manager over the same store decrypts the stored key."""
        pair = keys.get_active_key_pair()
        reloaded = KeyManager(store, master_secret=settings.master_secret).get_active_key_pair()

        assert reloaded.key_id == pair.key_id

    def test_wrong_master_secret_cannot_load_key(self, keys, store):
        keys.get_active_key_pair()
        other = KeyManager(store, master_secret="another-master-secret-0123456789-abcdef")

        with pytest.raises(SigningUnavailableError):
            other.get_active_key_pair()

    def test_rotate_keeps_previous_key_verifying(self, keys):
        previous = keys.get_active_key_pair()
        current = keys.rotate()

        assert current.key_id != previous.key_id
        assert keys.get_active_key_pair().key_id == current.key_id
        assert keys.get_verification_key(previous.key_id) is not None

    def test_retired_key_stops_verifying_after_window(self, keys):
        previous = keys.get_active_key_pair()
        keys.rotate()

        later = utcnow() + keys.retention + timedelta(minutes=1)
        assert keys.get_verification_key(previous.key_id, now=later) is None

    def test_unknown_key_id_has_no_verification_key(self, keys):
        keys.get_active_key_pair()

        assert keys.get_verification_key("no-such-kid") is None

    def test_jwks_lists_active_and_retired_keys(self, keys):
        previous = keys.get_active_key_pair()
        current = keys.rotate()

        jwks = keys.jwks()
        kids = {entry["kid"] for entry in jwks["keys"]}

        assert kids == {previous.key_id, current.key_id}
        for entry in jwks["keys"]:
            assert entry["kty"] == "RSA"
            assert entry["use"] == "sig"
            assert "d" not in entry

    def test_rotation_due(self, keys):
        keys.get_active_key_pair()

        assert keys.rotation_due(timedelta(days=30)) is False
        assert keys.rotation_due(timedelta(seconds=0)) is True


class TestAccessTokens:
    """Tests for issuing and verifying access tokens."""

    def test_token_carries_kid_and_claims(self, tokens, keys, store, alice):
        session, issued = _open_session(store, tokens, alice.user.id)

        header = jwt.get_unverified_header(issued.token)
        claims = tokens.decode_access_token(issued.token)

        assert header["kid"] == keys.get_active_key_pair().key_id
        assert header["alg"] == "RS256"
        assert claims.subject == alice.user.uuid
        assert claims.email == "alice@example.com"
        assert claims.jti == session.jwt_jti
        assert claims.session_id == session.session_id
        assert claims.roles == ["user"]
        assert issued.expires_in == 15 * 60

    def test_verify_binds_token_to_live_session(self, tokens, store, alice):
        _, issued = _open_session(store, tokens, alice.user.id)

        claims = asyncio.run(tokens.verify_access_token(issued.token))

        assert claims.user_id == alice.user.id

    def test_token_without_session_is_rejected(self, tokens, store, alice):
        user = store.get_user(alice.user.id)
        issued = tokens.issue_access_token(user, roles=[], permissions=[])

        with pytest.raises(SessionRevokedError):
            asyncio.run(tokens.verify_access_token(issued.token))

    def test_deactivated_session_rejects_token(self, tokens, store, alice):
        session, issued = _open_session(store, tokens, alice.user.id)
        store.deactivate_session(session.session_id, reason="logout", at=utcnow())

        with pytest.raises(SessionRevokedError):
            asyncio.run(tokens.verify_access_token(issued.token))

    def test_disabled_user_rejects_token(self, tokens, store, alice):
        _, issued = _open_session(store, tokens, alice.user.id)
        store.set_user_active(alice.user.id, False)

        with pytest.raises(SessionRevokedError):
            asyncio.run(tokens.verify_access_token(issued.token))

    def test_expired_token_raises_token_expired(self, tokens, store, alice):
        long_ago = utcnow() - timedelta(hours=2)
        _, issued = _open_session(store, tokens, alice.user.id, now=long_ago)

        with pytest.raises(TokenExpiredError):
            tokens.decode_access_token(issued.token)

    def test_tampered_token_is_invalid(self, tokens, store, alice):
        _, issued = _open_session(store, tokens, alice.user.id)
        head, payload, signature = issued.token.split(".")
        middle = len(signature) // 2
        flipped = "A" if signature[middle] != "A" else "B"
        forged = ".".join([head, payload, signature[:middle] + flipped + signature[middle + 1 :]])

        with pytest.raises(InvalidTokenError):
            tokens.decode_access_token(forged)

    def test_garbage_token_is_invalid(self, tokens):
        with pytest.raises(InvalidTokenError):
            tokens.decode_access_token("not.a.jwt")

    def test_token_signed_by_foreign_key_is_invalid(self, tokens, store, alice):
        """Same kid, different key material: the signature check fails."""
        from cryptography.hazmat.primitives.asymmetric import rsa

        kid = tokens.keys.get_active_key_pair().key_id
        foreign = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        now = int(utcnow().timestamp())
        forged = jwt.encode(
            {
                "sub": alice.user.uuid,
                "jti": "forged",
                "iat": now,
                "exp": now + 600,
                "iss": tokens.issuer,
                "aud": tokens.audience,
            },
            foreign,
            algorithm="RS256",
            headers={"kid": kid},
        )

        with pytest.raises(InvalidTokenError):
            tokens.decode_access_token(forged)

    async def test_unknown_kid_lookup_runs_off_the_event_loop(self, tokens, store, monkeypatch):
        """Resolving a kid that is not cached goes to the store from a worker thread."""
        from cryptography.hazmat.primitives.asymmetric import rsa

        tokens.keys.get_active_key_pair()
        seen = []
        real_lookup = store.get_signing_key

        def recording_lookup(key_id):
            seen.append(threading.get_ident())
            return real_lookup(key_id)

        monkeypatch.setattr(store, "get_signing_key", recording_lookup)
        foreign = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        now = int(utcnow().timestamp())
        forged = jwt.encode(
            {"sub": "x", "jti": "x", "iat": now, "exp": now + 600},
            foreign,
            algorithm="RS256",
            headers={"kid": uuid.uuid4().hex},
        )
        loop_thread = threading.get_ident()

        with pytest.raises(InvalidTokenError):
            await tokens.verify_access_token(forged)

        assert seen
        assert loop_thread not in seen

    def test_store_outage_while_loading_key_is_not_fatal(self, tokens, store, alice, monkeypatch):
        def unavailable():
            raise StoreUnavailable("database unavailable")

        monkeypatch.setattr(tokens.keys, "get_active_key_pair", unavailable)

        with pytest.raises(StoreUnavailable):
            _open_session(store, tokens, alice.user.id)

    def test_broken_key_material_is_fatal(self, tokens, store, alice, monkeypatch):
        def broken():
            raise ValueError("bad PEM")

        monkeypatch.setattr(tokens.keys, "get_active_key_pair", broken)

        with pytest.raises(SigningUnavailableError):
            _open_session(store, tokens, alice.user.id)

    def test_wrong_audience_is_invalid(self, tokens, keys, alice, store):
        key = keys.get_active_key_pair()
        now = int(utcnow().timestamp())
        token = jwt.encode(
            {
                "sub": alice.user.uuid,
                "jti": "x",
                "iat": now,
                "exp": now + 600,
                "iss": tokens.issuer,
                "aud": "someone-else",
            },
            key.private_key,
            algorithm="RS256",
            headers={"kid": key.key_id},
        )

        with pytest.raises(InvalidTokenError):
            tokens.decode_access_token(token)

    def test_missing_kid_is_invalid(self, tokens, keys, alice):
        key = keys.get_active_key_pair()
        now = int(utcnow().timestamp())
        token = jwt.encode(
            {"sub": alice.user.uuid, "jti": "x", "iat": now, "exp": now + 600},
            key.private_key,
            algorithm="RS256",
        )

        with pytest.raises(InvalidTokenError):
            tokens.decode_access_token(token)

    def test_token_from_retired_key_verifies_within_window(self, tokens, keys, store, alice):
        _, issued = _open_session(store, tokens, alice.user.id)
        keys.rotate()

        claims = tokens.decode_access_token(issued.token)

        assert claims.subject == alice.user.uuid


class TestRefreshTokens:
    """Tests for opaque refresh token minting."""

    def test_refresh_tokens_are_unique_and_long(self, tokens):
        first, first_hash = tokens.issue_refresh_token()
        second, second_hash = tokens.issue_refresh_token()

        assert first != second
        assert first_hash != second_hash
        assert len(first) >= 64

    def test_hash_is_deterministic_and_not_plaintext(self, tokens):
        token, token_hash = tokens.issue_refresh_token()

        assert tokens.hash_refresh_token(token) == token_hash
        assert token not in token_hash
        assert len(token_hash) == 64
