from __future__ import annotations

from base64 import urlsafe_b64encode
from dataclasses import dataclass
import hashlib
import logging
import secrets

from cryptography.fernet import Fernet, InvalidToken

from nexusdb.core.config import Settings
from nexusdb.core.errors import ConfigurationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedCredentials:
    username: str
    sealed_password: str


def _build_fernet(master_key: str) -> Fernet:
    source = (master_key or "").strip()
    if not source:
        raise ConfigurationError("CREDENTIALS_MASTER_KEY is required to seal database credentials")
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


class CredentialVault:
    """Generates per-deployment database credentials and seals them at rest."""

    def __init__(self, settings: Settings) -> None:
        self._fernet = _build_fernet(settings.credentials_master_key)
        # Sealed secrets issued by this process; revoke drops them so rollback is observable.
        self._issued: dict[str, IssuedCredentials] = {}

    def issue(self, deployment_id: str) -> IssuedCredentials:
        # Idempotent per deployment so a retried security stage keeps the same secret.
        existing = self._issued.get(deployment_id)
        if existing is not None:
            return existing
        username = f"app_{deployment_id[:12]}"
        password = secrets.token_urlsafe(24)
        sealed = self._fernet.encrypt(password.encode("utf-8")).decode("utf-8")
        issued = IssuedCredentials(username=username, sealed_password=sealed)
        self._issued[deployment_id] = issued
        logger.info("credentials_issued deployment_id=%s username=%s", deployment_id, username)
        return issued

    def reveal(self, sealed_password: str) -> str:
        try:
            return self._fernet.decrypt(sealed_password.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ConfigurationError("sealed credentials cannot be opened with the configured master key") from exc

    def revoke(self, deployment_id: str) -> bool:
        revoked = self._issued.pop(deployment_id, None) is not None
        if revoked:
            logger.info("credentials_revoked deployment_id=%s", deployment_id)
        return revoked

    def is_issued(self, deployment_id: str) -> bool:
        return deployment_id in self._issued
