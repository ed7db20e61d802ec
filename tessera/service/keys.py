from __future__ import annotations

import base64
import hashlib
import json
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service.errors import SigningUnavailableError
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import SigningKeyRecord, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class KeyPair:
    key_id: str
    algorithm: str
    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey
    created_at: datetime


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class KeyManager:
    """Owns the RSA signing keys used for access tokens.

    The current key pair is cached after first load and replaced as a whole
    on rotation, so readers never observe a partially built key. Retired
    public keys are kept in a bounded LRU and honoured only until the end of
    their verification window. Private keys are stored Fernet-encrypted
    under the master secret and decrypted only in memory.
    """

    def __init__(
        self,
        store: Any,
        *,
        master_secret: Optional[str],
        algorithm: str = "RS256",
        key_size: int = 2048,
        retention_minutes: int = 1440,
        max_retired_keys: int = 16,
    ) -> None:
        if not master_secret:
            raise SigningUnavailableError("master secret is not configured")
        self.store = store
        self.algorithm = algorithm
        self.key_size = key_size
        self.retention = timedelta(minutes=retention_minutes)
        self.max_retired_keys = max_retired_keys
        self._cipher = Fernet(_derive_cipher_key(master_secret))
        self._lock = threading.RLock()
        self._active: Optional[KeyPair] = None
        self._retired: "OrderedDict[str, Tuple[rsa.RSAPublicKey, Optional[datetime]]]" = OrderedDict()

    @classmethod
    def from_settings(cls, store: Any, settings: Settings) -> "KeyManager":
        # Retired keys must outlive every access token they signed
        retention = max(settings.signing_key_retention_minutes, settings.access_token_ttl_minutes)
        return cls(
            store,
            master_secret=settings.master_secret,
            algorithm=settings.jwt_algorithm,
            key_size=settings.signing_key_size,
            retention_minutes=retention,
            max_retired_keys=settings.max_retired_keys,
        )

    # ------------------------------------------------------------------
    # key material
    # ------------------------------------------------------------------

    def _generate(self, now: datetime) -> Tuple[SigningKeyRecord, KeyPair]:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)
        public_key = private_key.public_key()
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_pem = public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        key_id = str(uuid.uuid4())
        record = SigningKeyRecord(
            key_id=key_id,
            algorithm=self.algorithm,
            public_key=public_pem.decode("ascii"),
            private_key_encrypted=self._cipher.encrypt(private_pem).decode("ascii"),
            is_active=True,
            created_at=now,
            key_metadata={"key_size": self.key_size, "key_type": "RSA"},
        )
        pair = KeyPair(
            key_id=key_id,
            algorithm=self.algorithm,
            private_key=private_key,
            public_key=public_key,
            created_at=now,
        )
        return record, pair

    def _pair_from_record(self, record: SigningKeyRecord) -> KeyPair:
        try:
            private_pem = self._cipher.decrypt(record.private_key_encrypted.encode("ascii"))
        except InvalidToken as exc:
            logger.error("signing_key_decrypt_failed", key_id=record.key_id)
            raise SigningUnavailableError(
                "signing key cannot be decrypted with the configured master secret"
            ) from exc
        private_key = serialization.load_pem_private_key(private_pem, password=None)
        return KeyPair(
            key_id=record.key_id,
            algorithm=record.algorithm,
            private_key=private_key,
            public_key=private_key.public_key(),
            created_at=record.created_at,
        )

    def _load_or_create(self) -> KeyPair:
        record = self.store.get_active_signing_key()
        if record is not None:
            return self._pair_from_record(record)
        new_record, pair = self._generate(utcnow())
        try:
            self.store.save_signing_key(new_record)
        except ConstraintViolation:
            # Another process stored the first key between our read and write
            record = self.store.get_active_signing_key()
            if record is None:
                raise SigningUnavailableError("no active signing key could be established")
            return self._pair_from_record(record)
        logger.info("signing_key_generated", key_id=pair.key_id, algorithm=pair.algorithm)
        return pair

    def _remember(self, key_id: str, public_key: rsa.RSAPublicKey, verify_until: Optional[datetime]) -> None:
        self._retired[key_id] = (public_key, verify_until)
        self._retired.move_to_end(key_id)
        while len(self._retired) > self.max_retired_keys:
            self._retired.popitem(last=False)

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def get_active_key_pair(self) -> KeyPair:
        active = self._active
        if active is not None:
            return active
        with self._lock:
            if self._active is None:
                self._active = self._load_or_create()
            return self._active

    def reload(self) -> KeyPair:
        """Re-read the current key from the store, e.g. after another process rotated."""
        with self._lock:
            previous = self._active
            record = self.store.get_active_signing_key()
            if record is None:
                self._active = self._load_or_create()
            elif previous is None or previous.key_id != record.key_id:
                if previous is not None:
                    retired = self.store.get_signing_key(previous.key_id)
                    self._remember(
                        previous.key_id,
                        previous.public_key,
                        retired.expires_at if retired else utcnow() + self.retention,
                    )
                self._active = self._pair_from_record(record)
            return self._active

    def get_verification_key(
        self, key_id: str, now: Optional[datetime] = None
    ) -> Optional[rsa.RSAPublicKey]:
        """Public key for ``key_id``, or None when unknown or past its window."""
        now = now or utcnow()
        active = self.get_active_key_pair()
        if key_id == active.key_id:
            return active.public_key

        with self._lock:
            cached = self._retired.get(key_id)
            if cached is not None:
                public_key, verify_until = cached
                if verify_until is not None and verify_until <= now:
                    del self._retired[key_id]
                    return None
                self._retired.move_to_end(key_id)
                return public_key

        record = self.store.get_signing_key(key_id)
        if record is None or not record.verifies_at(now):
            return None
        if record.is_active:
            return self.reload().public_key
        public_key = serialization.load_pem_public_key(record.public_key.encode("ascii"))
        with self._lock:
            self._remember(key_id, public_key, record.expires_at)
        return public_key

    def rotate(self) -> KeyPair:
        """Install a fresh key pair; the previous key keeps verifying for the retention window."""
        with self._lock:
            now = utcnow()
            previous = self._active
            record, pair = self._generate(now)
            verify_until = now + self.retention
            self.store.rotate_signing_key(record, rotated_at=now, verify_until=verify_until)
            if previous is not None:
                self._remember(previous.key_id, previous.public_key, verify_until)
            self._active = pair
        logger.info(
            "signing_key_rotated",
            key_id=pair.key_id,
            previous_key_id=previous.key_id if previous else None,
            verify_until=verify_until.isoformat(),
        )
        return pair

    def rotation_due(self, max_age: timedelta, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.get_active_key_pair().created_at + max_age <= now

    def jwks(self, now: Optional[datetime] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Public JWK set of every key that can currently verify a token."""
        now = now or utcnow()
        self.get_active_key_pair()
        keys = []
        for record in self.store.list_verification_keys(now):
            public_key = serialization.load_pem_public_key(record.public_key.encode("ascii"))
            jwk = json.loads(RSAAlgorithm.to_jwk(public_key))
            jwk.update({"kid": record.key_id, "alg": record.algorithm, "use": "sig"})
            keys.append(jwk)
        return {"keys": keys}
