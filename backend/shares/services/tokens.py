"""
Token Service
=============
Issues single-use download credentials and verifies candidates against
the stored salted hash.
"""

import base64
import hashlib
import hmac
import logging
import secrets

logger = logging.getLogger(__name__)


TOKEN_BYTES = 32  # 256 bits of entropy
SALT_BYTES = 16  # 128 bits


class TokenService:
    """
    Generates opaque credentials and verifies them in constant time.

    Only the hash and salt leave this class for persistence; the
    plaintext is returned once by ``generate_token`` and never stored.
    """

    @staticmethod
    def generate_token() -> tuple[str, str, str]:
        """
        Create a fresh credential.

        Returns:
            tuple: (plaintext, hash, salt). ``plaintext`` is URL-safe
            base64 without padding, so it never needs percent-encoding.
            ``hash`` and ``salt`` are standard base64 strings.
        """
        plaintext = secrets.token_urlsafe(TOKEN_BYTES)
        salt = base64.b64encode(secrets.token_bytes(SALT_BYTES)).decode('ascii')
        return plaintext, TokenService._hash(plaintext, salt), salt

    @staticmethod
    def verify_token(candidate, token_hash, salt) -> bool:
        """
        Check ``candidate`` against a stored hash and salt.

        Fails closed: empty input, a malformed salt or any other error
        yields False. The final comparison is constant-time.
        """
        if not candidate or not token_hash or not salt:
            return False

        try:
            computed = TokenService._hash(candidate, salt)
            return hmac.compare_digest(
                computed.encode('ascii'),
                token_hash.encode('ascii'),
            )
        except Exception as e:
            logger.debug(f"Token verification failed closed: {type(e).__name__}")
            return False

    @staticmethod
    def _hash(plaintext: str, salt: str) -> str:
        salt_bytes = base64.b64decode(salt, validate=True)
        if base64.b64encode(salt_bytes).decode('ascii') != salt:
            raise ValueError("Salt is not canonical base64")
        digest = hashlib.sha256(salt_bytes + plaintext.encode('utf-8')).digest()
        return base64.b64encode(digest).decode('ascii')
