"""Safe extraction of site archives into a staging directory."""

from __future__ import annotations

import io
import re
import shutil
import zipfile
from pathlib import Path, PurePosixPath
from typing import List, Tuple

import structlog

from sirka_agent.core.exceptions import ArchiveError, MalformedArchive, PathTraversalAttempt
from sirka_agent.deploy.models import DeployStage, StagedContent

logger = structlog.get_logger()

_DRIVE_ROOT = re.compile(r"^[A-Za-z]:(/|$)")

DEFAULT_MAX_EXTRACTED_BYTES = 500 * 1024 * 1024


def _entry_parts(name: str) -> Tuple[str, ...]:
    """Split an entry name into path parts, rejecting absolute forms.

    Backslashes are treated as separators so Windows-built archives cannot
    smuggle ``..\\`` past the check.
    """
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or _DRIVE_ROOT.match(normalized):
        raise PathTraversalAttempt(
            f"Archive entry uses an absolute path: {name!r}",
            stage=DeployStage.STAGE.value,
        )
    parts = tuple(p for p in PurePosixPath(normalized).parts if p not in ("", "."))
    if ".." in parts:
        raise PathTraversalAttempt(
            f"Archive entry escapes the staging directory: {name!r}",
            stage=DeployStage.STAGE.value,
        )
    return parts


class ArchiveStager:
    """Unpacks ZIP archives, all-or-nothing."""

    def __init__(self, max_extracted_bytes: int = DEFAULT_MAX_EXTRACTED_BYTES):
        self.max_extracted_bytes = max_extracted_bytes

    def stage(self, archive: bytes, dest_dir: Path) -> StagedContent:
        """Extract ``archive`` into ``dest_dir``.

        Every entry is validated before anything is written. On any failure
        ``dest_dir`` is removed so no partial tree is left behind.

        Raises:
            MalformedArchive: not a ZIP, corrupt, empty or too large
            PathTraversalAttempt: an entry is absolute or escapes ``dest_dir``
        """
        with self._open(archive) as zf:
            plan = self._plan(zf, dest_dir)
            dest_dir.mkdir(parents=True, exist_ok=False)
            try:
                files = self._extract(zf, plan, dest_dir)
            except ArchiveError:
                self._discard(dest_dir)
                raise
            except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, RuntimeError, NotImplementedError) as e:
                # CRC mismatches surface as BadZipFile while reading
                self._discard(dest_dir)
                raise MalformedArchive(f"Archive is corrupt: {e}", stage=DeployStage.STAGE.value) from e
            except (NotADirectoryError, IsADirectoryError, FileExistsError) as e:
                # a file entry and a directory entry share one path
                self._discard(dest_dir)
                raise MalformedArchive(f"Archive has conflicting entries: {e}", stage=DeployStage.STAGE.value) from e
            except OSError:
                self._discard(dest_dir)
                raise

        logger.info("Archive staged", dest=str(dest_dir), files=len(files))
        return StagedContent(path=dest_dir, files=files)

    def validate(self, archive: bytes, dest_dir: Path) -> None:
        """Run every check ``stage`` runs before writing, without writing."""
        with self._open(archive) as zf:
            self._plan(zf, dest_dir)

    @staticmethod
    def _open(archive: bytes) -> zipfile.ZipFile:
        try:
            return zipfile.ZipFile(io.BytesIO(archive))
        except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as e:
            raise MalformedArchive(f"Archive is not a valid ZIP file: {e}", stage=DeployStage.STAGE.value) from e

    def _plan(self, zf: zipfile.ZipFile, dest_dir: Path) -> List[Tuple[zipfile.ZipInfo, Tuple[str, ...]]]:
        base = dest_dir.resolve()
        plan = []
        total = 0
        has_file = False
        for member in zf.infolist():
            parts = _entry_parts(member.filename)
            if not parts:
                continue
            target = base.joinpath(*parts).resolve()
            if target != base and base not in target.parents:
                raise PathTraversalAttempt(
                    f"Archive entry escapes the staging directory: {member.filename!r}",
                    stage=DeployStage.STAGE.value,
                )
            if not member.is_dir():
                has_file = True
                total += member.file_size
            plan.append((member, parts))

        if not has_file:
            raise MalformedArchive("Archive contains no files", stage=DeployStage.STAGE.value)
        if total > self.max_extracted_bytes:
            raise MalformedArchive(
                f"Archive expands to {total} bytes, limit is {self.max_extracted_bytes}",
                stage=DeployStage.STAGE.value,
            )
        return plan

    def _extract(self, zf: zipfile.ZipFile, plan, dest_dir: Path) -> List[str]:
        files = []
        for member, parts in plan:
            target = dest_dir.joinpath(*parts)
            if member.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            # Symlink entries are written as regular files holding the link text
            with zf.open(member, "r") as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
            files.append("/".join(parts))
        return sorted(files)

    @staticmethod
    def _discard(dest_dir: Path) -> None:
        try:
            shutil.rmtree(dest_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Failed to remove partial staging directory", dest=str(dest_dir), error=str(e))

