"""OS keychain access (macOS Keychain / Windows Credential Manager / Secret Service)."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

DEFAULT_SERVICE = "ReBrowse"
_AVAILABLE = False

try:
    import keyring
    import keyring.errors

    _AVAILABLE = True
except Exception:
    logger.warning("keyring not available; credential persistence disabled")


def is_available() -> bool:
    """Return True if the OS keychain is usable."""
    return _AVAILABLE


def load(key: str, service: str = DEFAULT_SERVICE) -> str | None:
    """Load a secret from the OS keychain. Returns None on failure."""
    if not _AVAILABLE:
        return None
    try:
        return keyring.get_password(service, key)
    except Exception:
        logger.warning("Failed to read %s from keyring", key)
        return None


def save(key: str, value: str, service: str = DEFAULT_SERVICE) -> bool:
    """Save a secret to the OS keychain. Returns True on success."""
    if not _AVAILABLE or not value:
        return False
    try:
        keyring.set_password(service, key, value)
        return True
    except Exception:
        logger.warning("Failed to save %s to keyring", key)
        return False


def delete(key: str, service: str = DEFAULT_SERVICE) -> bool:
    """Delete a secret from the OS keychain. Returns True on success."""
    if not _AVAILABLE:
        return False
    try:
        keyring.delete_password(service, key)
        return True
    except Exception:
        return False
