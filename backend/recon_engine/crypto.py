"""
Field-level encryption for source-entity credentials.

Uses Fernet symmetric encryption from the `cryptography` package.
The key is sourced from the ENCRYPTION_KEY env var.

If no key is configured (development mode), encryption/decryption are
passthrough operations so local development works without extra setup.
"""

import logging
from cryptography.fernet import Fernet, InvalidToken
from recon_engine.config import get_settings
from recon_engine.errors import AuthError
from recon_engine.models import MetaAdAccount, PosStore

logger = logging.getLogger(__name__)

_fernet = None
_NO_KEY_WARNING_EMITTED = False


def _get_fernet() -> Fernet | None:
    """Lazy-init the Fernet instance from the configured key."""
    global _fernet, _NO_KEY_WARNING_EMITTED
    if _fernet is not None:
        return _fernet

    settings = get_settings()
    key = settings.encryption_key

    if not key:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        if not _NO_KEY_WARNING_EMITTED:
            logger.warning(
                "ENCRYPTION_KEY not set — source credentials are read as plaintext. "
                "This is acceptable for local development only."
            )
            _NO_KEY_WARNING_EMITTED = True
        return None

    try:
        _fernet = Fernet(key.encode() if isinstance(key, str) else key)
    except Exception as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc

    return _fernet


def encrypt_value(plaintext: str | None) -> str | None:
    """Encrypt a string value. Returns the ciphertext or the original value if no key."""
    if plaintext is None:
        return None
    f = _get_fernet()
    if f is None:
        return plaintext
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str | None) -> str | None:
    """
    Decrypt a string value. Returns the original value if no key is configured.
    Raises AuthError when a key is configured but the token does not verify.
    """
    if ciphertext is None:
        return None
    f = _get_fernet()
    if f is None:
        return ciphertext
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken as exc:
        raise AuthError("Stored credential could not be decrypted") from exc


def decrypt_credentials(entity: MetaAdAccount | PosStore) -> dict:
    """
    Resolve the provider credentials for a source entity.
    Raises AuthError when the secret is missing or undecryptable.
    """
    if isinstance(entity, MetaAdAccount):
        token = decrypt_value(entity.access_token)
        if not token:
            raise AuthError(f"Meta ad account {entity.account_id} has no access token")
        return {"access_token": token}
    if isinstance(entity, PosStore):
        api_key = decrypt_value(entity.api_key)
        if not api_key:
            raise AuthError(f"POS store {entity.shop_id} has no API key")
        return {"api_key": api_key}
    raise AuthError(f"No credential resolver for {type(entity).__name__}")
