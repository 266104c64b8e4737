"""Tests for credential_store module."""

import base64
import json
import threading
import time
from unittest import mock

import pytest

from ReBrowse import token_store
from ReBrowse.credential_store import CredentialStore, KeyringCipher, SecretCipher
from ReBrowse.errors import AuthFailedError, StorageError, TokenExpiredError
from ReBrowse.models import AuthMethod, ProviderType
from ReBrowse.oauth import TokenBundle

REPO_ID = "repo-1"


class FakeCipher(SecretCipher):
    """Reversible stand-in so tests do not touch the OS keychain."""

    def encrypt(self, plaintext: bytes) -> bytes:
        return b"enc:" + plaintext[::-1]

    def decrypt(self, ciphertext: bytes) -> bytes:
        if not ciphertext.startswith(b"enc:"):
            raise StorageError()
        return ciphertext[4:][::-1]


class Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(tmp_path, clock):
    return CredentialStore(tmp_path / "git-credentials.json", FakeCipher(), clock=clock)


def _put_pat(store, secret="ghp_personal", **kwargs):
    return store.put(REPO_ID, ProviderType.GITHUB, AuthMethod.PAT, secret, **kwargs)


class TestPut:
    def test_round_trip(self, store):
        handle = _put_pat(store)
        assert handle.is_valid is True
        assert handle.auth_method == AuthMethod.PAT
        assert store.acquire(REPO_ID, AuthMethod.PAT) == "ghp_personal"

    def test_plaintext_never_written(self, store, tmp_path):
        _put_pat(store)
        raw = (tmp_path / "git-credentials.json").read_text()
        assert "ghp_personal" not in raw
        assert json.loads(raw)["credentials"][0]["authMethod"] == "pat"

    def test_persisted_across_instances(self, store, tmp_path, clock):
        _put_pat(store)
        reopened = CredentialStore(tmp_path / "git-credentials.json", FakeCipher(), clock=clock)
        assert reopened.acquire(REPO_ID, AuthMethod.PAT) == "ghp_personal"

    def test_whitespace_stripped(self, store):
        _put_pat(store, "  ghp_padded \n")
        assert store.acquire(REPO_ID, AuthMethod.PAT) == "ghp_padded"

    @pytest.mark.parametrize("secret", ["", "   "])
    def test_empty_rejected(self, store, secret):
        with pytest.raises(AuthFailedError, match="empty"):
            _put_pat(store, secret)

    def test_anonymous_has_nothing_to_store(self, store):
        with pytest.raises(ValueError):
            store.put(REPO_ID, ProviderType.GITHUB, AuthMethod.NONE, "x")

    def test_handle_exposes_no_secret(self, store):
        data = _put_pat(store).to_dict()
        assert "ghp_personal" not in json.dumps(data)
        assert set(data) == {"repositoryId", "authMethod", "isValid", "expiresAt", "scopes"}


class TestGet:
    def test_oauth_preferred(self, store):
        _put_pat(store)
        store.put(REPO_ID, ProviderType.GITHUB, AuthMethod.OAUTH, "gho_oauth")
        assert store.get(REPO_ID).auth_method == AuthMethod.OAUTH
        assert store.get(REPO_ID, AuthMethod.PAT).auth_method == AuthMethod.PAT

    def test_missing(self, store):
        assert store.get(REPO_ID) is None
        assert store.handle(REPO_ID) is None
        assert store.is_valid(REPO_ID) is False

    def test_corrupt_index_starts_empty(self, tmp_path, clock):
        path = tmp_path / "git-credentials.json"
        path.write_text("{not json")
        assert CredentialStore(path, FakeCipher(), clock=clock).get(REPO_ID) is None


class TestAcquire:
    def test_anonymous(self, store):
        assert store.acquire(REPO_ID, AuthMethod.NONE) is None

    def test_missing_credential(self, store):
        with pytest.raises(AuthFailedError, match="sign in"):
            store.acquire(REPO_ID, AuthMethod.PAT)

    def test_expired_pat(self, store, clock):
        _put_pat(store, expires_at=clock.now + 10)
        clock.now += 11
        assert store.is_valid(REPO_ID) is False
        with pytest.raises(TokenExpiredError, match="personal access token"):
            store.acquire(REPO_ID, AuthMethod.PAT)

    def test_expired_oauth_refreshed(self, store, clock):
        store.put(
            REPO_ID,
            ProviderType.GITHUB,
            AuthMethod.OAUTH,
            "gho_old",
            expires_at=clock.now + 10,
            refresh_secret="ghr_refresh",
            scopes=["repo"],
        )
        clock.now += 60
        refresher = mock.Mock(
            return_value=TokenBundle(access_token="gho_new", expires_at=clock.now + 3600)
        )

        assert store.acquire(REPO_ID, AuthMethod.OAUTH, refresher) == "gho_new"
        refresher.assert_called_once_with("ghr_refresh")
        handle = store.handle(REPO_ID, AuthMethod.OAUTH)
        assert handle.is_valid is True
        assert handle.scopes == ["repo"]
        assert store.acquire(REPO_ID, AuthMethod.OAUTH) == "gho_new"

    def test_rejected_refresh_deletes_credential(self, store, clock):
        store.put(
            REPO_ID,
            ProviderType.GITHUB,
            AuthMethod.OAUTH,
            "gho_old",
            expires_at=clock.now,
            refresh_secret="ghr_refresh",
        )
        refresher = mock.Mock(side_effect=AuthFailedError())
        with pytest.raises(TokenExpiredError):
            store.acquire(REPO_ID, AuthMethod.OAUTH, refresher)
        assert store.get(REPO_ID, AuthMethod.OAUTH) is None

    def test_concurrent_refresh_uses_token_once(self, store, clock):
        store.put(
            REPO_ID,
            ProviderType.GITHUB,
            AuthMethod.OAUTH,
            "gho_old",
            expires_at=clock.now,
            refresh_secret="ghr_1",
        )
        entered = threading.Event()
        release = threading.Event()
        used = []

        def rotate(refresh_token):
            entered.set()
            release.wait(5)
            if refresh_token in used:
                raise AuthFailedError()
            used.append(refresh_token)
            return TokenBundle(
                access_token="gho_new", refresh_token="ghr_2", expires_at=clock.now + 3600
            )

        results = []

        def worker():
            try:
                results.append(store.acquire(REPO_ID, AuthMethod.OAUTH, rotate))
            except TokenExpiredError as exc:
                results.append(exc.code)

        first = threading.Thread(target=worker)
        first.start()
        assert entered.wait(5)
        second = threading.Thread(target=worker)
        second.start()
        time.sleep(0.05)
        release.set()
        first.join(5)
        second.join(5)

        assert results == ["gho_new", "gho_new"]
        assert used == ["ghr_1"]
        assert store.get(REPO_ID, AuthMethod.OAUTH) is not None

    def test_rejected_refresh_keeps_newer_credential(self, store, clock):
        store.put(
            REPO_ID,
            ProviderType.GITHUB,
            AuthMethod.OAUTH,
            "gho_old",
            expires_at=clock.now,
            refresh_secret="ghr_1",
        )

        def reauthorized_meanwhile(refresh_token):
            store.put(
                REPO_ID,
                ProviderType.GITHUB,
                AuthMethod.OAUTH,
                "gho_fresh",
                expires_at=clock.now + 3600,
                refresh_secret="ghr_other",
            )
            raise AuthFailedError()

        assert store.acquire(REPO_ID, AuthMethod.OAUTH, reauthorized_meanwhile) == "gho_fresh"
        assert store.get(REPO_ID, AuthMethod.OAUTH) is not None

    def test_expired_oauth_without_refresher(self, store, clock):
        store.put(
            REPO_ID, ProviderType.GITHUB, AuthMethod.OAUTH, "gho_old", expires_at=clock.now
        )
        with pytest.raises(TokenExpiredError):
            store.acquire(REPO_ID, AuthMethod.OAUTH)

    def test_updates_last_used(self, store, clock):
        _put_pat(store)
        clock.now = 2_000.0
        store.acquire(REPO_ID, AuthMethod.PAT)
        assert store.get(REPO_ID).last_used == 2_000.0


class TestAuthFailures:
    def test_deleted_at_threshold(self, store):
        _put_pat(store)
        assert store.record_auth_failure(REPO_ID, AuthMethod.PAT, threshold=2) is False
        assert store.get(REPO_ID) is not None
        assert store.record_auth_failure(REPO_ID, AuthMethod.PAT, threshold=2) is True
        assert store.get(REPO_ID) is None

    def test_success_resets_count(self, store):
        _put_pat(store)
        store.record_auth_failure(REPO_ID, AuthMethod.PAT, threshold=2)
        store.record_auth_success(REPO_ID, AuthMethod.PAT)
        assert store.record_auth_failure(REPO_ID, AuthMethod.PAT, threshold=2) is False

    def test_unknown_credential(self, store):
        assert store.record_auth_failure(REPO_ID, AuthMethod.PAT, threshold=1) is False


class TestDelete:
    def test_all_methods(self, store):
        _put_pat(store)
        store.put(REPO_ID, ProviderType.GITHUB, AuthMethod.OAUTH, "gho_oauth")
        store.put("other", ProviderType.GITHUB, AuthMethod.PAT, "ghp_other")
        assert store.delete(REPO_ID) == 2
        assert store.get(REPO_ID) is None
        assert store.get("other") is not None

    def test_single_method(self, store):
        _put_pat(store)
        store.put(REPO_ID, ProviderType.GITHUB, AuthMethod.OAUTH, "gho_oauth")
        assert store.delete(REPO_ID, AuthMethod.OAUTH) == 1
        assert store.get(REPO_ID).auth_method == AuthMethod.PAT

    def test_nothing_to_delete(self, store):
        assert store.delete(REPO_ID) == 0


class TestKeyringCipher:
    def _patched(self, stored=None, available=True, saved=True):
        return (
            mock.patch.object(token_store, "is_available", return_value=available),
            mock.patch.object(token_store, "load", return_value=stored),
            mock.patch.object(token_store, "save", return_value=saved),
        )

    def test_generates_and_stores_key(self):
        available, load, save = self._patched()
        with available, load, save as mock_save:
            cipher = KeyringCipher()
            ciphertext = cipher.encrypt(b"ghp_secret")
            assert b"ghp_secret" not in ciphertext
            assert cipher.decrypt(ciphertext) == b"ghp_secret"
        key_id, encoded, service = mock_save.call_args[0]
        assert key_id == KeyringCipher.KEY_ID
        assert service == "ReBrowse"
        assert len(base64.b64decode(encoded)) == 32

    def test_uses_existing_key(self):
        key = base64.b64encode(b"k" * 32).decode()
        available, load, save = self._patched(stored=key)
        with available, load, save as mock_save:
            first = KeyringCipher().encrypt(b"secret")
            assert KeyringCipher().decrypt(first) == b"secret"
        mock_save.assert_not_called()

    def test_tampered_ciphertext(self):
        key = base64.b64encode(b"k" * 32).decode()
        available, load, save = self._patched(stored=key)
        with available, load, save:
            cipher = KeyringCipher()
            ciphertext = bytearray(cipher.encrypt(b"secret"))
            ciphertext[-1] ^= 0xFF
            with pytest.raises(StorageError):
                cipher.decrypt(bytes(ciphertext))

    def test_keychain_unavailable(self):
        available, load, save = self._patched(available=False)
        with available, load, save:
            with pytest.raises(StorageError):
                KeyringCipher().encrypt(b"secret")

    def test_key_not_saved(self):
        available, load, save = self._patched(saved=False)
        with available, load, save:
            with pytest.raises(StorageError):
                KeyringCipher().encrypt(b"secret")
