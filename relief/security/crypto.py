import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from ..core.errors import ConfigurationError
from ..settings import settings

logger = logging.getLogger(__name__)


def encrypt_entity_secret(entity_secret_hex: str, public_key_pem: str) -> str:
    """Produce the per-request ``entitySecretCiphertext`` Circle expects.

    RSA-OAEP with SHA-256 over the raw 32-byte secret, base64 encoded. OAEP is
    randomized, so every call yields a fresh ciphertext.
    """
    try:
        secret = bytes.fromhex(entity_secret_hex.strip().removeprefix("0x"))
    except ValueError as exc:
        raise ConfigurationError("CIRCLE_ENTITY_SECRET is not valid hex") from exc
    public_key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
    ciphertext = public_key.encrypt(
        secret,
        padding.OAEP(
            mgf=padding.MGF1(algorithm=hashes.SHA256()),
            algorithm=hashes.SHA256(),
            label=None,
        ),
    )
    return base64.b64encode(ciphertext).decode("ascii")


def load_signer_key() -> str | None:
    if settings.SIGNER_PRIVATE_KEY:
        return settings.SIGNER_PRIVATE_KEY
    token = settings.SIGNER_PRIVATE_KEY_ENCRYPTED
    if not token:
        return None
    fernet = _get_fernet()
    if not fernet:
        raise ConfigurationError("SIGNER_KEY_ENCRYPTION_KEY is missing or invalid")
    try:
        return fernet.decrypt(token.encode("utf-8")).decode("utf-8").strip()
    except InvalidToken as exc:
        logger.error("signer_key_decrypt_failed_invalid_token")
        raise ConfigurationError("SIGNER_PRIVATE_KEY_ENCRYPTED could not be decrypted") from exc


def _get_fernet() -> Fernet | None:
    key = settings.SIGNER_KEY_ENCRYPTION_KEY
    if not key:
        logger.error("signer_key_encryption_key_missing")
        return None
    try:
        return Fernet(key.encode("utf-8"))
    except Exception:
        logger.exception("signer_key_encryption_key_invalid")
        return None
