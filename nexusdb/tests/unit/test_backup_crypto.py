from __future__ import annotations

import base64
import json
import os

import pytest

from nexusdb.core.config import Settings
from nexusdb.core.errors import ConfigurationError, RestoreError
from nexusdb.services.backup import (
    BackupArtifact,
    BackupManifest,
    LocalBackupStorage,
    decrypt_bytes,
    encrypt_bytes,
    encryption_key,
    load_manifest,
    sha256_file,
)


def test_encrypt_roundtrip_uses_fresh_nonce() -> None:
    key = os.urandom(32)
    first = encrypt_bytes(b"snapshot", key)
    second = encrypt_bytes(b"snapshot", key)
    assert first != second
    assert len(first) == 12 + len(b"snapshot") + 16
    assert decrypt_bytes(first, key) == b"snapshot"


def test_truncated_ciphertext_is_rejected() -> None:
    with pytest.raises(RestoreError):
        decrypt_bytes(b"short", os.urandom(32))


def test_encryption_key_accepts_hex_and_base64() -> None:
    raw = os.urandom(32)
    assert encryption_key(Settings(_env_file=None, backup_encryption_key=raw.hex())) == raw
    assert encryption_key(Settings(_env_file=None, backup_encryption_key=base64.b64encode(raw).decode())) == raw


@pytest.mark.parametrize("value", [None, "", os.urandom(10).hex()])
def test_encryption_key_must_be_present_and_sized(value: str | None) -> None:
    with pytest.raises(ConfigurationError):
        encryption_key(Settings(_env_file=None, backup_encryption_key=value))


def test_manifest_roundtrip_through_local_storage(tmp_path) -> None:
    storage = LocalBackupStorage(tmp_path)
    directory = storage.backup_dir("b-1")
    artifact_path = directory / "snapshot.json"
    artifact_path.write_bytes(b"{}")
    manifest = BackupManifest(
        backup_id="b-1",
        deployment_id="dep-1",
        backup_type="full",
        parent_backup_id=None,
        created_at="2026-01-05T02:00:00+00:00",
        manifest_version="1.0",
        encryption_enabled=False,
        artifacts=[
            BackupArtifact(
                name="snapshot.json",
                path=str(artifact_path),
                sha256=sha256_file(artifact_path),
                size_bytes=2,
                encrypted=False,
            )
        ],
    )
    (directory / "manifest.json").write_text(json.dumps(manifest.to_dict()), encoding="utf-8")
    assert load_manifest(directory / "manifest.json") == manifest
    storage.remove("b-1")
    assert not directory.exists()
