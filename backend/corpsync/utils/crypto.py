"""
Encryption at rest for ESI access and refresh tokens
"""
import base64
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .logger import get_logger

logger = get_logger('crypto')


class TokenCrypto:
    """
    Token encryption helper

    Uses Fernet when a key is configured, otherwise a reversible
    base64 obfuscation (development only).
    """

    OBFUSCATION_PREFIX = 'OBF:'

    def __init__(self, key: Optional[str] = None):
        """
        Args:
            key: Fernet key (urlsafe base64, 32 bytes)
        """
        self._fernet = None

        if key:
            try:
                self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
            except (ValueError, TypeError) as e:
                logger.warning(f"Invalid Fernet key, tokens will only be obfuscated: {e}")
                self._fernet = None

    @property
    def is_secure(self) -> bool:
        """True when real encryption is in use"""
        return self._fernet is not None

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a token.

        Args:
            plaintext: Token in clear text

        Returns:
            Ciphertext (Fernet token or obfuscated string)
        """
        if not plaintext:
            return ''

        if self._fernet:
            return self._fernet.encrypt(plaintext.encode('utf-8')).decode('utf-8')
        return self._obfuscate(plaintext)

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a token.

        Values that are neither Fernet tokens nor obfuscated are returned
        unchanged (records written before a key was configured).
        """
        if not ciphertext:
            return ''

        if ciphertext.startswith(self.OBFUSCATION_PREFIX):
            return self._deobfuscate(ciphertext)

        if self._fernet:
            try:
                return self._fernet.decrypt(ciphertext.encode('utf-8')).decode('utf-8')
            except InvalidToken:
                return ciphertext
        return ciphertext

    def _obfuscate(self, text: str) -> str:
        encoded = base64.b64encode(text.encode('utf-8')).decode('utf-8')
        return self.OBFUSCATION_PREFIX + encoded

    def _deobfuscate(self, text: str) -> str:
        encoded = text[len(self.OBFUSCATION_PREFIX):]
        return base64.b64decode(encoded.encode('utf-8')).decode('utf-8')

    @staticmethod
    def generate_key() -> str:
        """
        Generate a new Fernet key.

        Returns:
            Key string suitable for TOKEN_ENCRYPTION_KEY
        """
        return Fernet.generate_key().decode('utf-8')
