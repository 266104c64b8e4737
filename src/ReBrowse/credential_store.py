"""Encrypted-at-rest storage of per-repository credentials.

Secrets (OAuth tokens, personal access tokens) are encrypted with a
:class:`SecretCipher` before they are written to the credential index. The
default cipher, :class:`KeyringCipher`, uses AES-256-GCM with a random key
that lives only in the OS keychain.

Decrypted secrets leave this module only through :meth:`CredentialStore.acquire`
and :meth:`CredentialStore.reveal`, which the repository service hands
straight to provider call sites. Everything else returns a
:class:`~ReBrowse.models.CredentialHandle`.
"""

from __future__ import annotations

import base64
import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ReBrowse import token_store
from ReBrowse.errors import (
    AuthFailedError,
    StorageError,
    TokenExpiredError,
)
from ReBrowse.jsonfile import read_json, write_json
from ReBrowse.models import AuthMethod, Credential, CredentialHandle, ProviderType

if TYPE_CHECKING:
    from ReBrowse.oauth import TokenBundle

logger = logging.getLogger(__name__)

KEY_SIZE_BYTES = 32  # AES-256
NONCE_SIZE_BYTES = 12  # GCM standard


class SecretCipher(ABC):
    """Encrypts and decrypts credential secrets."""

    @abstractmethod
    def encrypt(self, plaintext: bytes) -> bytes:
        """Return the ciphertext for *plaintext*."""

    @abstractmethod
    def decrypt(self, ciphertext: bytes) -> bytes:
        """Return the plaintext for *ciphertext*. Raises StorageError."""


class KeyringCipher(SecretCipher):
    """AES-256-GCM with the key kept in the OS keychain."""

    KEY_ID = "credential-encryption-key"

    def __init__(self, service: str = token_store.DEFAULT_SERVICE) -> None:
        self.service = service
        self._key: bytes | None = None
        self._lock = threading.Lock()

    def _get_key(self) -> bytes:
        with self._lock:
            if self._key is not None:
                return self._key
            if not token_store.is_available():
                raise StorageError("The OS keychain is not available.")

            stored = token_store.load(self.KEY_ID, self.service)
            if stored:
                self._key = base64.b64decode(stored)
                return self._key

            key = secrets.token_bytes(KEY_SIZE_BYTES)
            if not token_store.save(
                self.KEY_ID, base64.b64encode(key).decode("ascii"), self.service
            ):
                raise StorageError("Could not store the encryption key in the OS keychain.")
            logger.info("Generated new credential encryption key")
            self._key = key
            return key

    def encrypt(self, plaintext: bytes) -> bytes:
        nonce = secrets.token_bytes(NONCE_SIZE_BYTES)
        return nonce + AESGCM(self._get_key()).encrypt(nonce, plaintext, None)

    def decrypt(self, ciphertext: bytes) -> bytes:
        if len(ciphertext) <= NONCE_SIZE_BYTES:
            raise StorageError("Stored credential is corrupt.")
        nonce, body = ciphertext[:NONCE_SIZE_BYTES], ciphertext[NONCE_SIZE_BYTES:]
        try:
            return AESGCM(self._get_key()).decrypt(nonce, body, None)
        except InvalidTag as exc:
            raise StorageError("Stored credential could not be decrypted.") from exc


Refresher = Callable[[str], "TokenBundle"]

# Preferred order when no auth method is given
_METHOD_PREFERENCE = (AuthMethod.OAUTH, AuthMethod.PAT)


class CredentialStore:
    """Index of encrypted credentials keyed by (repository id, auth method).

    Args:
        path: JSON file holding the encrypted index.
        cipher: Cipher used for every secret.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        path: Path,
        cipher: SecretCipher,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self.cipher = cipher
        self.clock = clock
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._refresh_locks: dict[tuple[str, AuthMethod], threading.Lock] = {}
        self._version = 0
        self._written_version = 0
        self._credentials: dict[tuple[str, AuthMethod], Credential] = self._load()

    # -- persistence -------------------------------------------------------

    def _load(self) -> dict[tuple[str, AuthMethod], Credential]:
        raw = read_json(self.path)
        if raw is None:
            return {}
        try:
            loaded = [Credential.from_dict(item) for item in raw.get("credentials", [])]
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.warning("Credential index at %s is corrupt; starting empty", self.path)
            return {}
        return {(c.repository_id, c.auth_method): c for c in loaded}

    def _persist(self) -> None:
        with self._lock:
            snapshot = [c.to_dict() for c in self._credentials.values()]
            version = self._version

        with self._write_lock:
            # A newer snapshot already reached disk
            if version < self._written_version:
                return
            try:
                write_json(self.path, {"credentials": snapshot})
            except OSError as exc:
                raise StorageError("Could not write the credential index.") from exc
            self._written_version = version

    # -- contract ----------------------------------------------------------

    def put(
        self,
        repository_id: str,
        provider: ProviderType,
        auth_method: AuthMethod,
        secret: str,
        *,
        expires_at: float | None = None,
        scopes: Iterable[str] = (),
        refresh_secret: str | None = None,
    ) -> CredentialHandle:
        """Encrypt and store a credential, replacing any with the same method."""
        if auth_method == AuthMethod.NONE:
            raise ValueError("Anonymous access has no credential to store")
        if not secret or not secret.strip():
            raise AuthFailedError("Token cannot be empty.")

        encrypted = self._encrypt(secret.strip())
        encrypted_refresh = self._encrypt(refresh_secret) if refresh_secret else None

        with self._lock:
            existing = self._credentials.get((repository_id, auth_method))
            credential = Credential(
                repository_id=repository_id,
                provider=provider,
                auth_method=auth_method,
                encrypted_secret=encrypted,
                encrypted_refresh_secret=encrypted_refresh,
                expires_at=expires_at,
                scopes=list(scopes),
                created_at=existing.created_at if existing else self.clock(),
                last_used=existing.last_used if existing else None,
            )
            self._credentials[(repository_id, auth_method)] = credential
            self._version += 1
        self._persist()
        logger.info(
            "Stored %s credential for repository %s", auth_method.value, repository_id
        )
        return self._handle(credential)

    def get(
        self, repository_id: str, auth_method: AuthMethod | None = None
    ) -> Credential | None:
        """Return the stored (still encrypted) credential, if any."""
        with self._lock:
            if auth_method is not None:
                return self._credentials.get((repository_id, auth_method))
            for method in _METHOD_PREFERENCE:
                credential = self._credentials.get((repository_id, method))
                if credential is not None:
                    return credential
        return None

    def is_valid(
        self, repository_id: str, auth_method: AuthMethod | None = None
    ) -> bool:
        """True if a credential exists and has not passed ``expires_at``."""
        credential = self.get(repository_id, auth_method)
        return credential is not None and not credential.is_expired(self.clock())

    def handle(
        self, repository_id: str, auth_method: AuthMethod | None = None
    ) -> CredentialHandle | None:
        credential = self.get(repository_id, auth_method)
        return self._handle(credential) if credential else None

    def delete(
        self, repository_id: str, auth_method: AuthMethod | None = None
    ) -> int:
        """Delete credentials for a repository (all methods when none is given)."""
        with self._lock:
            keys = [
                key
                for key in self._credentials
                if key[0] == repository_id
                and (auth_method is None or key[1] == auth_method)
            ]
            for key in keys:
                del self._credentials[key]
            if keys:
                self._version += 1
        if keys:
            self._persist()
            logger.info("Deleted %d credential(s) for repository %s", len(keys), repository_id)
        return len(keys)

    # -- trusted boundary --------------------------------------------------

    def reveal(self, credential: Credential) -> str:
        """Decrypt a credential's secret. Only for provider call sites."""
        return self._decrypt(credential.encrypted_secret)

    def acquire(
        self,
        repository_id: str,
        auth_method: AuthMethod,
        refresher: Refresher | None = None,
    ) -> str | None:
        """Return a usable secret, refreshing expired OAuth tokens in place.

        Returns None for anonymous access.

        Raises:
            AuthFailedError: no credential is stored for the method.
            TokenExpiredError: the credential expired and cannot be refreshed.
        """
        if auth_method == AuthMethod.NONE:
            return None

        credential = self.get(repository_id, auth_method)
        if credential is None:
            raise AuthFailedError(
                "No stored credential for this repository. Please sign in."
            )

        if credential.is_expired(self.clock()):
            if (
                auth_method == AuthMethod.OAUTH
                and credential.encrypted_refresh_secret
                and refresher is not None
            ):
                return self._refresh(repository_id, auth_method, refresher)
            raise TokenExpiredError(
                "Your personal access token has expired. Please enter a new one."
                if auth_method == AuthMethod.PAT
                else None
            )

        self._touch(credential)
        return self.reveal(credential)

    def record_auth_failure(
        self, repository_id: str, auth_method: AuthMethod, threshold: int
    ) -> bool:
        """Count a 401 for the credential; delete it at *threshold*.

        Returns True if the credential was deleted.
        """
        with self._lock:
            credential = self._credentials.get((repository_id, auth_method))
            if credential is None:
                return False
            credential.auth_failures += 1
            failures = credential.auth_failures
            self._version += 1
        if failures >= threshold:
            logger.warning(
                "Credential for repository %s rejected %d times; deleting it",
                repository_id,
                failures,
            )
            self.delete(repository_id, auth_method)
            return True
        self._persist()
        return False

    def record_auth_success(self, repository_id: str, auth_method: AuthMethod) -> None:
        """Reset the 401 count after the provider accepted the credential."""
        with self._lock:
            credential = self._credentials.get((repository_id, auth_method))
            if credential is None or credential.auth_failures == 0:
                return
            credential.auth_failures = 0
            self._version += 1
        self._persist()

    # -- internals ---------------------------------------------------------

    def _refresh_lock(self, key: tuple[str, AuthMethod]) -> threading.Lock:
        with self._lock:
            return self._refresh_locks.setdefault(key, threading.Lock())

    def _refresh(
        self, repository_id: str, auth_method: AuthMethod, refresher: Refresher
    ) -> str:
        key = (repository_id, auth_method)
        # Refresh tokens are single use, so one refresh per credential at a time
        with self._refresh_lock(key):
            credential = self.get(repository_id, auth_method)
            if credential is None:
                raise TokenExpiredError()
            if not credential.is_expired(self.clock()):
                # Another caller refreshed it while we waited
                self._touch(credential)
                return self.reveal(credential)
            if not credential.encrypted_refresh_secret:
                raise TokenExpiredError()
            return self._refresh_locked(credential, refresher)

    def _refresh_locked(self, credential: Credential, refresher: Refresher) -> str:
        rejected = credential.encrypted_refresh_secret or ""
        refresh_token = self._decrypt(rejected)
        try:
            bundle = refresher(refresh_token)
        except AuthFailedError as exc:
            current = self._discard_rejected(credential, rejected)
            if current is not None:
                self._touch(current)
                return self.reveal(current)
            raise TokenExpiredError() from exc
        logger.info("Refreshed OAuth token for repository %s", credential.repository_id)
        self.put(
            credential.repository_id,
            credential.provider,
            credential.auth_method,
            bundle.access_token,
            expires_at=bundle.expires_at,
            scopes=bundle.scopes or credential.scopes,
            refresh_secret=bundle.refresh_token or refresh_token,
        )
        return bundle.access_token

    def _discard_rejected(self, credential: Credential, rejected: str) -> Credential | None:
        """Delete the credential whose refresh token was rejected.

        A credential stored since the refresh started is kept; it is returned
        when still usable.
        """
        key = (credential.repository_id, credential.auth_method)
        with self._lock:
            current = self._credentials.get(key)
            if current is None:
                return None
            if current.encrypted_refresh_secret != rejected:
                return None if current.is_expired(self.clock()) else current
            del self._credentials[key]
            self._version += 1
        self._persist()
        logger.info("Refresh token rejected; deleted credential for repository %s", key[0])
        return None

    def _touch(self, credential: Credential) -> None:
        with self._lock:
            credential.last_used = self.clock()

    def _handle(self, credential: Credential) -> CredentialHandle:
        return CredentialHandle(
            repository_id=credential.repository_id,
            auth_method=credential.auth_method,
            is_valid=not credential.is_expired(self.clock()),
            expires_at=credential.expires_at,
            scopes=list(credential.scopes),
        )

    def _encrypt(self, secret: str) -> str:
        return base64.b64encode(self.cipher.encrypt(secret.encode("utf-8"))).decode("ascii")

    def _decrypt(self, encrypted: str) -> str:
        try:
            raw = base64.b64decode(encrypted)
        except ValueError as exc:
            raise StorageError("Stored credential is corrupt.") from exc
        return self.cipher.decrypt(raw).decode("utf-8")
