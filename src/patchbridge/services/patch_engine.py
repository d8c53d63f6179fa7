from __future__ import annotations

"""Apply extracted file commands to the target project tree.

Each command goes through the same steps:

    received -> normalized -> written | create-fallback | rejected -> reported

Failures never escape ``apply``; they are folded into the returned
``PatchResult`` so that one bad command does not block the rest of a batch.
Before an existing file is overwritten a timestamped copy is written next to
it and recorded in the engine's ``BackupIndex``; ``restore_from_backup``
copies such a file back for a user-triggered revert.
"""

import logging
import re
from datetime import UTC, datetime
from pathlib import PurePosixPath
from threading import RLock
from typing import Dict, Iterable, List, Optional, Sequence

from ..domain.models import BackupRecord, CodeCommand, Operation, PatchResult
from ..errors import PatchError
from ..infrastructure.file_system import FileSystem


logger = logging.getLogger("patchbridge.patch")

DELETE_DISABLED_ERROR = "Delete operation is disabled for safety"
MISSING_SECTION_ERROR = "Modify command requires a target section"
BACKUP_MARKER = "_backup_"


class BackupIndex:
    """Backups per normalized original path, oldest first."""

    def __init__(self) -> None:
        self._records: Dict[str, List[BackupRecord]] = {}
        self._lock = RLock()

    def add(self, original_path: str, record: BackupRecord) -> None:
        with self._lock:
            self._records.setdefault(original_path, []).append(record)

    def records(self, original_path: str) -> List[BackupRecord]:
        with self._lock:
            return list(self._records.get(original_path, []))

    def latest(self, original_path: str) -> Optional[BackupRecord]:
        with self._lock:
            records = self._records.get(original_path)
            return records[-1] if records else None


def replace_section(original: str, section: str, new_content: str) -> str:
    """Replace the body of a ``// BEGIN <section>`` / ``// END <section>`` block.

    Marker lines are kept so the same section can be modified again. When
    the block is missing (or the markers are out of order) a new block is
    appended to the end of the file.
    """

    begin_marker = f"// BEGIN {section}"
    end_marker = f"// END {section}"
    begin = re.search(rf"^[ \t]*{re.escape(begin_marker)}[ \t]*$", original, re.MULTILINE)
    end = re.search(rf"^[ \t]*{re.escape(end_marker)}[ \t]*$", original, re.MULTILINE)

    if begin is None or end is None or begin.start() >= end.start():
        logger.warning("Section %s not found; appending a new block", section)
        return original + "\n\n" + begin_marker + "\n" + new_content + "\n" + end_marker + "\n"

    return original[: begin.end()] + "\n" + new_content + "\n" + original[end.start():]


class PatchEngine:
    def __init__(
        self,
        fs: FileSystem,
        target_root: str = "Assets/Scripts",
        default_extension: str = ".cs",
        recognized_extensions: Sequence[str] = (".cs", ".js", ".shader", ".compute", ".json"),
        backups_enabled: bool = True,
    ) -> None:
        self.fs = fs
        self.target_root = target_root.strip("/")
        self.default_extension = default_extension
        self.recognized_extensions = tuple(ext.lower() for ext in recognized_extensions)
        self.backups_enabled = backups_enabled
        self.backups = BackupIndex()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def _is_rooted(self, path: str) -> bool:
        # Paths under the project's top-level folder (e.g. "Assets/Editor/...")
        # already name their location and are left where they point.
        project_folder = self.target_root.split("/", 1)[0]
        return any(path == root or path.startswith(root + "/") for root in (self.target_root, project_folder))

    def normalize_path(self, file_path: str) -> str:
        path = (file_path or "").replace("\\", "/").strip().lstrip("/")
        if not path:
            raise PatchError("Empty file path")
        if ".." in PurePosixPath(path).parts:
            raise PatchError(f"Path escapes project root: {file_path}")
        if self.target_root and not self._is_rooted(path):
            path = f"{self.target_root}/{path}"
        if not path.lower().endswith(self.recognized_extensions):
            path += self.default_extension
        return path

    def _backup_name(self, rel_path: str) -> str:
        p = PurePosixPath(rel_path)
        stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S_%f")
        candidate = str(p.with_name(f"{p.stem}{BACKUP_MARKER}{stamp}{p.suffix}"))
        n = 1
        while self.fs.exists(candidate):
            candidate = str(p.with_name(f"{p.stem}{BACKUP_MARKER}{stamp}_{n}{p.suffix}"))
            n += 1
        return candidate

    def _backup(self, rel_path: str) -> Optional[str]:
        if not self.backups_enabled or not self.fs.exists(rel_path):
            return None
        backup_path = self._backup_name(rel_path)
        self.fs.copy(rel_path, backup_path)
        self.backups.add(
            rel_path,
            BackupRecord(created_at=datetime.now(UTC).isoformat().replace("+00:00", "Z"), backup_path=backup_path),
        )
        logger.info("Created backup %s", backup_path)
        return backup_path

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def _write(self, rel_path: str, content: str) -> Optional[str]:
        backup_path = self._backup(rel_path)
        self.fs.write_text(rel_path, content)
        logger.info("Wrote %s (%d chars)", rel_path, len(content))
        return backup_path

    def create(self, command: CodeCommand) -> PatchResult:
        path = self.normalize_path(command.file_path)
        backup_path = self._write(path, command.content)
        return PatchResult(file_path=path, operation=Operation.CREATE, success=True, backup_path=backup_path)

    def modify(self, command: CodeCommand) -> PatchResult:
        if not command.section:
            raise PatchError(MISSING_SECTION_ERROR)
        path = self.normalize_path(command.file_path)
        if not self.fs.exists(path):
            logger.info("Modify target %s does not exist; creating it", path)
            self.fs.write_text(path, command.content)
            return PatchResult(file_path=path, operation=Operation.MODIFY, success=True, section=command.section)
        original = self.fs.read_text(path)
        updated = replace_section(original, command.section, command.content)
        backup_path = self._write(path, updated)
        return PatchResult(
            file_path=path,
            operation=Operation.MODIFY,
            success=True,
            section=command.section,
            backup_path=backup_path,
        )

    def apply(self, command: CodeCommand) -> PatchResult:
        if command.operation == Operation.DELETE:
            try:
                path = self.normalize_path(command.file_path)
            except PatchError:
                path = command.file_path
            logger.warning("Refused delete of %s", path)
            return PatchResult(
                file_path=path,
                operation=Operation.DELETE,
                success=False,
                error=DELETE_DISABLED_ERROR,
            )
        try:
            if command.operation == Operation.CREATE:
                return self.create(command)
            if command.operation == Operation.MODIFY:
                return self.modify(command)
            raise PatchError(f"Unsupported operation: {command.operation.value}")
        except (PatchError, OSError, ValueError) as exc:
            logger.error("Failed to %s %s: %s", command.operation.value, command.file_path, exc)
            return PatchResult(
                file_path=command.file_path,
                operation=command.operation,
                success=False,
                section=command.section,
                error=str(exc),
            )

    def apply_all(self, commands: Iterable[CodeCommand]) -> List[PatchResult]:
        return [self.apply(cmd) for cmd in commands]

    # ------------------------------------------------------------------
    # Backups and inspection
    # ------------------------------------------------------------------
    def restore_from_backup(self, backup_path: str, original_path: str) -> PatchResult:
        try:
            if not self.fs.exists(backup_path):
                raise PatchError(f"Backup file not found: {backup_path}")
            self.fs.copy(backup_path, original_path)
        except (PatchError, OSError, ValueError) as exc:
            logger.error("Failed to restore %s from %s: %s", original_path, backup_path, exc)
            return PatchResult(file_path=original_path, operation=Operation.RESTORE, success=False, error=str(exc))
        logger.info("Restored %s from %s", original_path, backup_path)
        return PatchResult(file_path=original_path, operation=Operation.RESTORE, success=True, backup_path=backup_path)

    def backups_for(self, file_path: str) -> List[BackupRecord]:
        return self.backups.records(self.normalize_path(file_path))

    def latest_backup(self, file_path: str) -> Optional[BackupRecord]:
        return self.backups.latest(self.normalize_path(file_path))

    def read_file(self, file_path: str) -> Optional[str]:
        path = self.normalize_path(file_path)
        try:
            if not self.fs.exists(path):
                return None
            return self.fs.read_text(path)
        except ValueError as exc:
            raise PatchError(str(exc)) from exc
