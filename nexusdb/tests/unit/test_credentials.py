from __future__ import annotations

import pytest

from nexusdb.core.config import Settings
from nexusdb.core.errors import ConfigurationError
from nexusdb.services.credentials import CredentialVault


def _vault(master_key: str = "unit-test-master-key") -> CredentialVault:
    return CredentialVault(Settings(_env_file=None, credentials_master_key=master_key))


def test_issue_is_idempotent_and_sealed() -> None:
    vault = _vault()
    first = vault.issue("0123456789abcdef")
    assert first.username == "app_0123456789ab"
    assert vault.issue("0123456789abcdef") == first
    password = vault.reveal(first.sealed_password)
    assert password
    assert password not in first.sealed_password


def test_revoke_forgets_issued_credentials() -> None:
    vault = _vault()
    vault.issue("dep-1")
    assert vault.is_issued("dep-1")
    assert vault.revoke("dep-1") is True
    assert vault.revoke("dep-1") is False
    assert not vault.is_issued("dep-1")


def test_reveal_with_other_master_key_fails() -> None:
    sealed = _vault("key-one").issue("dep-1").sealed_password
    with pytest.raises(ConfigurationError):
        _vault("key-two").reveal(sealed)


def test_blank_master_key_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        _vault("  ")
