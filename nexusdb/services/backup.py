from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime
import hashlib
import json
import logging
import os
from pathlib import Path
import shutil
import time
from typing import Any, Awaitable, Callable, Protocol

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from sqlalchemy.ext.asyncio import AsyncSession

from nexusdb.core.clock import TimeProvider, as_utc, utc_now
from nexusdb.core.config import Settings
from nexusdb.core.errors import BackupFailure, ConfigurationError, NotFoundError, RestoreError
from nexusdb.domain.models import BackupRecord, DeploymentRecord
from nexusdb.domain.state import BackupStatus, BackupType
from nexusdb.persistence.db import SessionFactory, session_scope
from nexusdb.persistence.repos import backups as backups_repo
from nexusdb.persistence.repos import deployments as deployments_repo
from nexusdb.providers.substrate.base import ExecutionSubstrate
from nexusdb.services.events import EventBus
from nexusdb.services.resilience import Bulkhead
from nexusdb.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1.0"
MANIFEST_FILENAME = "manifest.json"

SnapshotRunner = Callable[[DeploymentRecord, BackupType, "BackupRecord | None"], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class BackupArtifact:
    # Describe a stored artifact so restore tooling can verify integrity.
    name: str
    path: str
    sha256: str
    size_bytes: int
    encrypted: bool


@dataclass(frozen=True)
class BackupManifest:
    backup_id: str
    deployment_id: str
    backup_type: str
    parent_backup_id: str | None
    created_at: str
    manifest_version: str
    encryption_enabled: bool
    artifacts: list[BackupArtifact]

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "deployment_id": self.deployment_id,
            "backup_type": self.backup_type,
            "parent_backup_id": self.parent_backup_id,
            "created_at": self.created_at,
            "manifest_version": self.manifest_version,
            "encryption_enabled": self.encryption_enabled,
            "artifacts": [artifact.__dict__ for artifact in self.artifacts],
        }


@dataclass(frozen=True)
class RestoreResult:
    deployment_id: str
    backup_id: str
    # Backups applied in order, base first.
    chain: list[str]
    started_at: datetime
    completed_at: datetime
    duration_ms: float
    verified: bool


class BackupStorage(Protocol):
    def backup_dir(self, backup_id: str) -> Path:
        ...

    def restore_dir(self, deployment_id: str) -> Path:
        ...

    def remove(self, backup_id: str) -> None:
        ...


@dataclass(frozen=True)
class LocalBackupStorage:
    base_dir: Path

    def backup_dir(self, backup_id: str) -> Path:
        path = self.base_dir / f"backup_{backup_id}"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def restore_dir(self, deployment_id: str) -> Path:
        path = self.base_dir / "restores" / deployment_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def remove(self, backup_id: str) -> None:
        shutil.rmtree(self.base_dir / f"backup_{backup_id}", ignore_errors=True)


def _decode_key(raw: str) -> bytes:
    # Accept hex or base64 encoded keys to align with operator tooling.
    cleaned = raw.strip()
    try:
        return bytes.fromhex(cleaned)
    except ValueError:
        return base64.b64decode(cleaned)


def encryption_key(settings: Settings) -> bytes:
    if not settings.backup_encryption_key:
        raise ConfigurationError("BACKUP_ENCRYPTION_KEY is required when encryption is enabled")
    key = _decode_key(settings.backup_encryption_key)
    if len(key) not in {16, 24, 32}:
        raise ConfigurationError("BACKUP_ENCRYPTION_KEY must be 128/192/256-bit")
    return key


def encrypt_bytes(payload: bytes, key: bytes) -> bytes:
    # AES-GCM layout: nonce (12) | ciphertext | tag (16).
    nonce = os.urandom(12)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    ciphertext = encryptor.update(payload) + encryptor.finalize()
    return nonce + ciphertext + encryptor.tag


def decrypt_bytes(blob: bytes, key: bytes) -> bytes:
    if len(blob) < 28:
        raise RestoreError("encrypted artifact is too small to contain nonce + tag")
    nonce, ciphertext, tag = blob[:12], blob[12:-16], blob[-16:]
    decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()
    return decryptor.update(ciphertext) + decryptor.finalize()


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def load_manifest(path: Path) -> BackupManifest:
    payload = json.loads(path.read_text(encoding="utf-8"))
    return BackupManifest(
        backup_id=payload["backup_id"],
        deployment_id=payload["deployment_id"],
        backup_type=payload["backup_type"],
        parent_backup_id=payload.get("parent_backup_id"),
        created_at=payload["created_at"],
        manifest_version=payload.get("manifest_version", MANIFEST_VERSION),
        encryption_enabled=bool(payload.get("encryption_enabled", False)),
        artifacts=[
            BackupArtifact(
                name=item["name"],
                path=item["path"],
                sha256=item["sha256"],
                size_bytes=int(item["size_bytes"]),
                encrypted=bool(item["encrypted"]),
            )
            for item in payload.get("artifacts", [])
        ],
    )


class SubstrateSnapshotRunner:
    """Captures a logical snapshot of a deployment through the execution substrate."""

    def __init__(self, substrate: ExecutionSubstrate, *, time_provider: TimeProvider | None = None) -> None:
        self._substrate = substrate
        self._now = time_provider or utc_now

    async def __call__(
        self,
        deployment: DeploymentRecord,
        backup_type: BackupType,
        base: BackupRecord | None,
    ) -> dict[str, Any]:
        replicas: list[dict[str, Any]] = []
        for handle in deployment.substrate_handles or []:
            metrics = await self._substrate.get_metrics(handle)
            replicas.append({"handle": handle, "metrics": metrics.__dict__})
        snapshot: dict[str, Any] = {
            "deployment_id": deployment.id,
            "engine_type": deployment.engine_type,
            "config_digest": deployment.config_digest,
            "captured_at": self._now().isoformat(),
            "backup_type": backup_type.value,
            "replicas": replicas,
        }
        if base is not None:
            base_completed = as_utc(base.completed_at)
            snapshot["base_backup_id"] = base.id
            snapshot["changes_since"] = base_completed.isoformat() if base_completed else None
        return snapshot


class BackupExecutor:
    def __init__(
        self,
        *,
        settings: Settings,
        sessions: SessionFactory,
        substrate: ExecutionSubstrate,
        events: EventBus,
        storage: BackupStorage | None = None,
        snapshot_runner: SnapshotRunner | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._settings = settings
        self._sessions = sessions
        self._substrate = substrate
        self._events = events
        self._storage = storage or LocalBackupStorage(Path(settings.backup_local_dir))
        self._now = time_provider or utc_now
        self._runner = snapshot_runner or SubstrateSnapshotRunner(substrate, time_provider=self._now)
        # Global limit on concurrent backup executions across deployments.
        self._bulkhead = Bulkhead("backups", settings.backup_max_concurrency)

    @property
    def bulkhead(self) -> Bulkhead:
        return self._bulkhead

    async def resolve_base(self, deployment_id: str, backup_type: BackupType) -> BackupRecord | None:
        # Incremental builds on the latest complete backup; differential on the latest complete full.
        if backup_type == BackupType.FULL:
            return None
        async with self._sessions() as session:
            if backup_type == BackupType.INCREMENTAL:
                return await backups_repo.latest_complete(session, deployment_id)
            return await backups_repo.latest_complete(session, deployment_id, backup_type=BackupType.FULL)

    async def execute(self, backup_id: str) -> BackupRecord:
        async with self._bulkhead.slot():
            return await self._execute(backup_id)

    async def _execute(self, backup_id: str) -> BackupRecord:
        async with session_scope(self._sessions) as session:
            backup = await backups_repo.get_backup(session, backup_id)
            if backup is None:
                raise NotFoundError(f"backup {backup_id} not found")
            if backup.status != BackupStatus.PENDING.value:
                # Status only moves forward; re-running a finished backup is a no-op.
                return backup
            deployment = await deployments_repo.get_deployment(session, backup.deployment_id)
            backup.status = BackupStatus.RUNNING.value
            backup.started_at = self._now()
        try:
            if deployment is None:
                raise BackupFailure(f"deployment {backup.deployment_id} no longer exists")
            backup_type = BackupType(backup.type)
            base: BackupRecord | None = None
            if backup_type != BackupType.FULL:
                if backup.parent_backup_id is None:
                    raise BackupFailure(f"{backup_type.value} backup requires a completed base backup")
                async with self._sessions() as session:
                    base = await backups_repo.get_backup(session, backup.parent_backup_id)
                if base is None or base.status != BackupStatus.COMPLETE.value:
                    raise BackupFailure(f"base backup {backup.parent_backup_id} is not available")
            snapshot = await self._runner(deployment, backup_type, base)
            manifest_path, checksum, size_bytes, encrypted = self._write_artifacts(backup, snapshot)
        except Exception as exc:  # noqa: BLE001 - every failure lands on the record
            reason = str(exc) or type(exc).__name__
            await self._mark_failed(backup_id, reason)
            if isinstance(exc, BackupFailure):
                raise
            raise BackupFailure(reason) from exc
        async with session_scope(self._sessions) as session:
            backup = await backups_repo.get_backup(session, backup_id)
            if backup is None:
                raise NotFoundError(f"backup {backup_id} not found")
            backup.status = BackupStatus.COMPLETE.value
            backup.location = str(manifest_path)
            backup.checksum = checksum
            backup.size_bytes = size_bytes
            backup.encrypted = encrypted
            backup.completed_at = self._now()
        increment_counter("backups_completed_total")
        logger.info(
            "backup_completed backup_id=%s deployment_id=%s type=%s size_bytes=%s",
            backup.id,
            backup.deployment_id,
            backup.type,
            size_bytes,
        )
        self._events.emit("backup.completed", backup.deployment_id, backup_id=backup.id, type=backup.type)
        return backup

    def _write_artifacts(self, backup: BackupRecord, snapshot: dict[str, Any]) -> tuple[Path, str, int, bool]:
        directory = self._storage.backup_dir(backup.id)
        payload = json.dumps(snapshot, sort_keys=True, separators=(",", ":")).encode("utf-8")
        encrypted = self._settings.backup_encryption_enabled
        name = "snapshot.json"
        if encrypted:
            payload = encrypt_bytes(payload, encryption_key(self._settings))
            name = "snapshot.json.enc"
        artifact_path = directory / name
        artifact_path.write_bytes(payload)
        checksum = sha256_file(artifact_path)
        manifest = BackupManifest(
            backup_id=backup.id,
            deployment_id=backup.deployment_id,
            backup_type=backup.type,
            parent_backup_id=backup.parent_backup_id,
            created_at=self._now().isoformat(),
            manifest_version=MANIFEST_VERSION,
            encryption_enabled=encrypted,
            artifacts=[
                BackupArtifact(
                    name=name,
                    path=str(artifact_path),
                    sha256=checksum,
                    size_bytes=artifact_path.stat().st_size,
                    encrypted=encrypted,
                )
            ],
        )
        manifest_path = directory / MANIFEST_FILENAME
        manifest_path.write_text(json.dumps(manifest.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
        return manifest_path, checksum, len(payload), encrypted

    async def _mark_failed(self, backup_id: str, reason: str) -> None:
        async with session_scope(self._sessions) as session:
            backup = await backups_repo.get_backup(session, backup_id)
            if backup is None:
                return
            if backup.status in (BackupStatus.PENDING.value, BackupStatus.RUNNING.value):
                backup.status = BackupStatus.FAILED.value
                backup.failure_reason = reason
                backup.completed_at = self._now()
            deployment_id = backup.deployment_id
        self._storage.remove(backup_id)
        increment_counter("backups_failed_total")
        logger.error("backup_failed backup_id=%s deployment_id=%s reason=%s", backup_id, deployment_id, reason)
        self._events.emit("backup.failed", deployment_id, backup_id=backup_id, reason=reason)

    # restore

    async def load_chain(self, backup_id: str) -> list[BackupRecord]:
        # Walk parent links back to the full base; returned base first.
        chain: list[BackupRecord] = []
        seen: set[str] = set()
        current_id: str | None = backup_id
        async with self._sessions() as session:
            while current_id is not None:
                if current_id in seen:
                    raise RestoreError(f"backup chain for {backup_id} contains a cycle")
                seen.add(current_id)
                backup = await backups_repo.get_backup(session, current_id)
                if backup is None:
                    raise RestoreError(f"backup {current_id} in chain of {backup_id} is missing")
                if backup.status != BackupStatus.COMPLETE.value:
                    raise RestoreError(f"backup {current_id} is {backup.status}, not complete")
                chain.append(backup)
                current_id = backup.parent_backup_id
        chain.reverse()
        return chain

    def verify(self, backup: BackupRecord) -> dict[str, Any]:
        if not backup.location:
            raise RestoreError(f"backup {backup.id} has no stored manifest")
        manifest_path = Path(backup.location)
        if not manifest_path.exists():
            raise RestoreError(f"manifest for backup {backup.id} is missing at {manifest_path}")
        manifest = load_manifest(manifest_path)
        if not manifest.artifacts:
            raise RestoreError(f"manifest for backup {backup.id} lists no artifacts")
        artifact = manifest.artifacts[0]
        artifact_path = Path(artifact.path)
        if not artifact_path.exists():
            raise RestoreError(f"artifact {artifact.name} of backup {backup.id} is missing")
        checksum = sha256_file(artifact_path)
        if checksum != artifact.sha256 or (backup.checksum and checksum != backup.checksum):
            raise RestoreError(f"checksum mismatch for backup {backup.id}")
        blob = artifact_path.read_bytes()
        if artifact.encrypted:
            try:
                blob = decrypt_bytes(blob, encryption_key(self._settings))
            except RestoreError:
                raise
            except Exception as exc:  # noqa: BLE001 - any decrypt failure means an unusable artifact
                raise RestoreError(f"backup {backup.id} cannot be decrypted") from exc
        return json.loads(blob.decode("utf-8"))

    async def restore(self, deployment: DeploymentRecord, backup_id: str) -> RestoreResult:
        started_at = self._now()
        start = time.monotonic()
        chain = await self.load_chain(backup_id)
        if chain[-1].deployment_id != deployment.id:
            raise RestoreError(f"backup {backup_id} does not belong to deployment {deployment.id}")
        if BackupType(chain[0].type) != BackupType.FULL:
            raise RestoreError(f"backup chain for {backup_id} does not start from a full backup")
        snapshots = [self.verify(backup) for backup in chain]
        stopped: list[str] = []
        try:
            for handle in deployment.substrate_handles or []:
                await self._substrate.stop(handle)
                stopped.append(handle)
            target = self._storage.restore_dir(deployment.id)
            for backup, snapshot in zip(chain, snapshots):
                (target / f"{backup.id}.json").write_text(json.dumps(snapshot, sort_keys=True), encoding="utf-8")
        except Exception as exc:  # noqa: BLE001 - substrate and storage faults surface as restore failures
            raise RestoreError(f"restore of backup {backup_id} failed: {exc}") from exc
        finally:
            # Every stopped instance comes back, even when a later stop or the apply step fails.
            for handle in stopped:
                await self._substrate.start(handle)
        completed_at = self._now()
        duration_ms = (time.monotonic() - start) * 1000.0
        increment_counter("restores_completed_total")
        logger.info(
            "restore_completed deployment_id=%s backup_id=%s chain_length=%s duration_ms=%.1f",
            deployment.id,
            backup_id,
            len(chain),
            duration_ms,
        )
        return RestoreResult(
            deployment_id=deployment.id,
            backup_id=backup_id,
            chain=[backup.id for backup in chain],
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
            verified=True,
        )

    # retention

    async def prune_expired(self, now: datetime | None = None) -> list[str]:
        now = now or self._now()
        pruned: list[str] = []
        async with session_scope(self._sessions) as session:
            expired = await backups_repo.list_expired(session, now=now)
            for backup in expired:
                retention_until = as_utc(backup.retention_until)
                if retention_until is None or retention_until > now:
                    continue
                if await self._has_retained_children(session, backup):
                    continue
                self._storage.remove(backup.id)
                await session.delete(backup)
                pruned.append(backup.id)
        if pruned:
            logger.info("backups_pruned count=%s", len(pruned))
            increment_counter("backups_pruned_total", len(pruned))
        return pruned

    async def _has_retained_children(self, session: AsyncSession, backup: BackupRecord) -> bool:
        # A base stays on disk while any incremental or differential built on it is retained.
        for candidate in await backups_repo.list_backups(session, backup.deployment_id):
            if candidate.parent_backup_id == backup.id and candidate.status == BackupStatus.COMPLETE.value:
                return True
        return False
