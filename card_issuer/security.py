"""
Security utilities: CVV verification, card number protection, API keys.

This module centralizes all cryptographic operations so they're easy to
audit and update. Three concerns are handled here:

1. CVV DIGESTS (HMAC-SHA256 with a server-side pepper)
   - The CVV is never stored; only hex(HMAC(pepper, cvv)) is kept
   - The digest is deterministic so a submitted CVV can be recomputed and
     compared in constant time
   - The pepper lives only in server configuration, so a leaked table alone
     is not enough to brute-force the 1,000-10,000 possible values

2. CARD NUMBER PROTECTION
   - Fernet (AES-128-CBC + HMAC-SHA256) encrypts the PAN at rest
   - A keyed fingerprint (HMAC-SHA256) gives a stable lookup key, since
     Fernet ciphertexts differ on every encryption

3. API KEYS
   - Callers authenticate with a shared key in the x-api-key header,
     compared in constant time
"""

import hashlib
import hmac
import re
import secrets

from cryptography.fernet import Fernet

from card_issuer.config import settings

_CVV_PATTERN = re.compile(r"^\d{3,4}$")


# ---------------------------------------------------------------------------
# 1. CVV digests
# ---------------------------------------------------------------------------


class CredentialVerifier:
    """
    Verifies a submitted CVV against a card's stored digest.

    The pepper is passed in explicitly so the verifier can be built with a
    test pepper without touching global settings.
    """

    def __init__(self, pepper: str):
        if not pepper:
            raise ValueError("CVV pepper must not be empty")
        self._key = pepper.encode()

    def digest(self, secret: str) -> str:
        """Return the hex HMAC-SHA256 digest of a CVV."""
        return hmac.new(self._key, secret.encode(), hashlib.sha256).hexdigest()

    def verify(self, card, submitted_secret) -> bool:
        """
        Check a submitted CVV against `card.cvv_hmac`.

        Malformed input (not a 3-4 digit string, card without a digest) is a
        mismatch, never an error. Neither the secret nor any digest is logged
        or returned.
        """
        if not isinstance(submitted_secret, str) or not _CVV_PATTERN.match(submitted_secret):
            return False
        expected = getattr(card, "cvv_hmac", None)
        if not isinstance(expected, str) or not expected:
            return False
        return hmac.compare_digest(
            self.digest(submitted_secret).encode(),
            expected.encode(),
        )


# ---------------------------------------------------------------------------
# 2. Card number protection
# ---------------------------------------------------------------------------

_fernet = Fernet(settings.CARD_ENCRYPTION_KEY.encode())
_fingerprint_key = hashlib.sha256(b"pan-fingerprint:" + settings.CARD_ENCRYPTION_KEY.encode()).digest()


def encrypt_value(plaintext: str) -> bytes:
    """Encrypt a string value using Fernet, for storage in a LargeBinary column."""
    return _fernet.encrypt(plaintext.encode())


def decrypt_value(ciphertext: bytes) -> str:
    """
    Decrypt a Fernet-encrypted value back to plaintext.

    Raises:
        cryptography.fernet.InvalidToken: If the data is corrupted or
            the encryption key doesn't match.
    """
    return _fernet.decrypt(ciphertext).decode()


def fingerprint_pan(pan: str) -> str:
    """Deterministic keyed fingerprint of a card number, used as lookup key."""
    return hmac.new(_fingerprint_key, pan.encode(), hashlib.sha256).hexdigest()


def generate_authorization_code() -> str:
    """Six-digit approval code; never the all-zero denial sentinel."""
    return f"{secrets.randbelow(900_000) + 100_000:06d}"


# ---------------------------------------------------------------------------
# 3. API keys
# ---------------------------------------------------------------------------


def api_key_matches(provided: str | None, configured: str) -> bool:
    """Constant-time comparison of the caller's key with the configured one."""
    if not provided:
        return False
    return hmac.compare_digest(provided.strip().encode(), configured.strip().encode())
