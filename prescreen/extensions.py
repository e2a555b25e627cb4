"""
Shared client instances — Redis, Altair, PII cipher.

Lazily initialized on first access so importing this module is always safe
(even when env vars are missing during tests).
"""
import logging
import redis

from prescreen.config import REDIS_URL

logger = logging.getLogger('prescreen.extensions')

# ── Redis ─────────────────────────────────────────────────────────────────────
redis_client = redis.from_url(REDIS_URL, decode_responses=True)

# ── Altair ────────────────────────────────────────────────────────────────────
_altair_client = None


def get_matching_client():
    """Return the process-wide Altair client (token cache lives on it)."""
    global _altair_client
    if _altair_client is None:
        from prescreen.services.altair import AltairClient
        _altair_client = AltairClient()
        if not _altair_client.is_configured:
            logger.warning("Altair credentials not set; submissions will fail upstream")
    return _altair_client


# ── PII cipher ────────────────────────────────────────────────────────────────
_cipher = None


def get_cipher():
    """Return the process-wide PII cipher, built from ENCRYPTION_KEY."""
    global _cipher
    if _cipher is None:
        from prescreen.services.encryption import PiiCipher
        _cipher = PiiCipher()
    return _cipher
