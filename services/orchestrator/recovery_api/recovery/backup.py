"""
Backups of module critical files.

A backup snapshots a module's critical files (manifest, build config,
build tool config) into `<backup_root>/<backup_id>/data` and records
metadata with per-file and whole-snapshot sha256 checksums in
`<backup_root>/<backup_id>.metadata.json`. Restores verify the snapshot
against its metadata before touching the module.
"""

import asyncio
import hashlib
import json
import logging
import shutil
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

from pydantic import BaseModel, Field

from .errors import BackupError

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".metadata.json"


class BackupStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CORRUPTED = "corrupted"


class BackupMetadata(BaseModel):
    id: str
    module_id: str
    module_path: str
    backup_path: str
    created_at: datetime
    files: List[str] = Field(default_factory=list)
    absent_files: List[str] = Field(default_factory=list)
    file_checksums: Dict[str, str] = Field(default_factory=dict)
    checksum: str = ""
    size_bytes: int = 0
    status: BackupStatus = BackupStatus.COMPLETED
    tags: List[str] = Field(default_factory=list)


class RestoreOutcome(BaseModel):
    backup_id: str
    restored_files: List[str] = Field(default_factory=list)
    removed_files: List[str] = Field(default_factory=list)
    verified: bool = False
    mismatched_files: List[str] = Field(default_factory=list)


def _file_checksum(path: Path) -> str:
    hasher = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(4096), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def _directory_checksum(directory: Path) -> str:
    hasher = hashlib.sha256()
    for file_path in sorted(directory.rglob("*")):
        if file_path.is_file():
            hasher.update(file_path.relative_to(directory).as_posix().encode("utf-8"))
            with open(file_path, 'rb') as f:
                for chunk in iter(lambda: f.read(4096), b""):
                    hasher.update(chunk)
    return hasher.hexdigest()


class BackupManager:
    """
    Creates, verifies, restores and prunes module backups.

    All writes to the backup directory go through one asyncio lock so
    concurrent module recoveries never interleave backup bookkeeping.
    """

    def __init__(
        self,
        backup_root: Path,
        critical_files: Sequence[str],
        max_backups: int = 10,
    ):
        self.logger = logging.getLogger(__name__)
        self.backup_root = Path(backup_root)
        self.critical_files = list(critical_files)
        self.max_backups = max_backups
        self._lock = asyncio.Lock()

    async def create_backup(
        self,
        module_id: str,
        module_path: Path,
        tags: Optional[List[str]] = None,
    ) -> BackupMetadata:
        """
        Snapshot the critical files of a module.

        Args:
            module_id: Module being backed up
            module_path: Directory holding the module's files
            tags: Optional tags stored with the metadata

        Returns:
            BackupMetadata for the completed backup

        Raises:
            BackupError: if the snapshot could not be written
        """
        created_at = datetime.now(UTC)
        backup_id = f"{module_id}-backup-{created_at.strftime('%Y%m%dT%H%M%S%f')}-{uuid4().hex[:6]}"
        backup_dir = self.backup_root / backup_id

        async with self._lock:
            self.logger.info(f"Creating backup {backup_id} for module {module_id}")
            try:
                data_dir = backup_dir / "data"
                data_dir.mkdir(parents=True, exist_ok=True)

                files, absent, checksums = [], [], {}
                for name in self.critical_files:
                    source = Path(module_path) / name
                    if source.is_file():
                        target = data_dir / name
                        target.parent.mkdir(parents=True, exist_ok=True)
                        shutil.copy2(source, target)
                        files.append(name)
                        checksums[name] = _file_checksum(target)
                    else:
                        absent.append(name)

                metadata = BackupMetadata(
                    id=backup_id,
                    module_id=module_id,
                    module_path=str(module_path),
                    backup_path=str(backup_dir),
                    created_at=created_at,
                    files=files,
                    absent_files=absent,
                    file_checksums=checksums,
                    checksum=_directory_checksum(data_dir),
                    size_bytes=sum((data_dir / name).stat().st_size for name in files),
                    tags=tags or [],
                )
                self._save_metadata(metadata)
            except OSError as e:
                self.logger.error(f"Backup creation failed for {module_id}: {e}")
                shutil.rmtree(backup_dir, ignore_errors=True)
                raise BackupError(f"Backup creation failed: {e}", module_id) from e

            removed = self._cleanup_old_backups(module_id)
            if removed:
                self.logger.info(f"Removed {removed} old backups for module {module_id}")

        self.logger.info(f"Backup {backup_id} created with {len(files)} files")
        return metadata

    def _metadata_file(self, backup_id: str) -> Path:
        return self.backup_root / f"{backup_id}{METADATA_SUFFIX}"

    def _save_metadata(self, metadata: BackupMetadata) -> None:
        with open(self._metadata_file(metadata.id), 'w', encoding='utf-8') as f:
            json.dump(metadata.model_dump(mode="json"), f, indent=2)

    def load_metadata(self, backup: str | Path) -> BackupMetadata:
        """Load metadata by backup id or by the backup directory path."""
        backup_id = Path(backup).name
        metadata_file = self._metadata_file(backup_id)
        if not metadata_file.is_file():
            raise BackupError(f"Backup not found: {backup_id}")
        with open(metadata_file, encoding='utf-8') as f:
            return BackupMetadata.model_validate(json.load(f))

    def list_backups(self, module_id: Optional[str] = None) -> List[BackupMetadata]:
        """Backups on disk, newest first."""
        if not self.backup_root.is_dir():
            return []
        backups = []
        for metadata_file in self.backup_root.glob(f"*{METADATA_SUFFIX}"):
            try:
                with open(metadata_file, encoding='utf-8') as f:
                    metadata = BackupMetadata.model_validate(json.load(f))
            except (OSError, ValueError) as e:
                self.logger.warning(f"Skipping unreadable backup metadata {metadata_file}: {e}")
                continue
            if module_id is None or metadata.module_id == module_id:
                backups.append(metadata)
        return sorted(backups, key=lambda b: b.created_at, reverse=True)

    def latest_backup(self, module_id: str) -> Optional[BackupMetadata]:
        completed = [b for b in self.list_backups(module_id) if b.status == BackupStatus.COMPLETED]
        return completed[0] if completed else None

    def verify_backup(self, metadata: BackupMetadata) -> bool:
        data_dir = Path(metadata.backup_path) / "data"
        if not data_dir.is_dir():
            return not metadata.files and not metadata.checksum
        return _directory_checksum(data_dir) == metadata.checksum

    async def restore_backup(
        self,
        metadata: BackupMetadata,
        module_path: Optional[Path] = None,
        remove_created: bool = True,
    ) -> RestoreOutcome:
        """
        Restore a module's critical files from a backup.

        Files recorded as absent at backup time are removed so the module
        returns to its snapshot state, unless `remove_created` is False. Restoring the same backup twice
        leaves the module unchanged.

        Raises:
            BackupError: if the snapshot fails its integrity check
        """
        module_path = Path(module_path or metadata.module_path)
        if not self.verify_backup(metadata):
            raise BackupError(f"Backup integrity check failed: {metadata.id}", metadata.module_id)

        data_dir = Path(metadata.backup_path) / "data"
        outcome = RestoreOutcome(backup_id=metadata.id)

        async with self._lock:
            self.logger.info(f"Restoring module {metadata.module_id} from backup {metadata.id}")
            module_path.mkdir(parents=True, exist_ok=True)
            for name in metadata.files:
                target = module_path / name
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(data_dir / name, target)
                outcome.restored_files.append(name)
            for name in metadata.absent_files if remove_created else ():
                target = module_path / name
                if target.is_file():
                    target.unlink()
                    outcome.removed_files.append(name)

        outcome.mismatched_files = [
            name for name in metadata.files
            if _file_checksum(module_path / name) != metadata.file_checksums.get(name)
        ]
        if remove_created:
            outcome.mismatched_files.extend(
                name for name in metadata.absent_files if (module_path / name).exists()
            )
        outcome.verified = not outcome.mismatched_files
        return outcome

    def _cleanup_old_backups(self, module_id: str) -> int:
        backups = self.list_backups(module_id)
        removed = 0
        for metadata in backups[self.max_backups:]:
            shutil.rmtree(metadata.backup_path, ignore_errors=True)
            self._metadata_file(metadata.id).unlink(missing_ok=True)
            removed += 1
        return removed

    async def cleanup_old_backups(self, module_id: str) -> int:
        """Delete all but the newest `max_backups` backups of a module."""
        async with self._lock:
            return self._cleanup_old_backups(module_id)
