"""
PII cipher for SSN / DOB.

Fernet (AES-128-CBC + HMAC-SHA256) from the cryptography package, keyed by
ENCRYPTION_KEY. Plaintext never leaves this module except as the return value
of decrypt(); nothing here logs values.
"""
import logging
import re

from cryptography.fernet import Fernet, InvalidToken

from prescreen.config import ENCRYPTION_KEY

logger = logging.getLogger('services.encryption')


class DecryptionError(Exception):
    """Stored ciphertext could not be decrypted (bad key, tampered or malformed)."""


class PiiCipher:

    def __init__(self, key=None):
        key = key or ENCRYPTION_KEY
        if not key:
            raise ValueError(
                "ENCRYPTION_KEY must be set to a Fernet key. "
                "Generate one with: python -c 'from cryptography.fernet import Fernet; "
                "print(Fernet.generate_key().decode())'"
            )
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode('utf-8')).decode('ascii')

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode('ascii')).decode('utf-8')
        except (InvalidToken, UnicodeError, ValueError) as e:
            raise DecryptionError('Invalid encrypted data') from e

    @staticmethod
    def last_four_of(ssn: str) -> str:
        return re.sub(r'\D', '', ssn or '')[-4:]


def mask_ssn(ssn: str) -> str:
    """Display form: only the last four digits."""
    digits = re.sub(r'\D', '', ssn or '')
    if len(digits) < 4:
        return 'XXX-XX-XXXX'
    return 'XXX-XX-' + digits[-4:]
