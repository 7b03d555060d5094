"""
TaskHub File Store — staging, promotion and purge of uploaded bytes.

Uploads are streamed into a staging directory first, outside any lock or
transaction. Only after the quota guard admits a batch are the staged files
moved into the upload root. Every path that does not end in a commit purges
what it staged.

Physical storage:
    {upload_dir}/{file_name}             — committed documents
    {staging_dir}/{file_name}            — in-flight uploads

Stored names are ``<uuid4 hex>-<epoch ms><ext>``; ``Document.file_path`` is
relative to ``upload_dir``.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, Optional

from taskhub.engine.errors import ConfigError, NotFoundError, ValidationFailedError

logger = logging.getLogger("taskhub.documents.storage")

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class StagedFile:
    """Bytes on disk that are not (yet) referenced by a committed Document row."""

    original_name: str
    file_name: str
    path: Path
    size: int
    sha256: str
    mime_type: str = "application/pdf"
    promoted: bool = False

    @property
    def relative_path(self) -> str:
        return self.file_name


class FileStore:
    """Owns the upload root and its staging area."""

    def __init__(self, upload_dir: str = "uploads", staging_dir: Optional[str] = None):
        self._upload_dir = Path(upload_dir).resolve()
        self._staging_dir = Path(staging_dir).resolve() if staging_dir else self._upload_dir / ".staging"
        self._upload_dir.mkdir(parents=True, exist_ok=True)
        self._staging_dir.mkdir(parents=True, exist_ok=True)
        if self._device_of(self._upload_dir) != self._device_of(self._staging_dir):
            raise ConfigError(
                f"staging_dir {self._staging_dir} must be on the same filesystem as upload_dir {self._upload_dir}"
            )

    @staticmethod
    def _device_of(path: Path) -> int:
        return path.stat().st_dev

    @property
    def upload_dir(self) -> Path:
        return self._upload_dir

    @property
    def staging_dir(self) -> Path:
        return self._staging_dir

    @staticmethod
    def make_file_name(original_name: str) -> str:
        ext = os.path.splitext(os.path.basename(original_name or ""))[1].lower()
        return f"{uuid.uuid4().hex}-{int(time.time() * 1000)}{ext}"

    @staticmethod
    def safe_original_name(filename: str) -> str:
        """
        Sanitize a client-supplied filename for storage in the database and
        in Content-Disposition headers.

        Removes path components, control characters and quotes.
        """
        name = os.path.basename((filename or "").replace("\\", "/"))
        name = "".join(c for c in name if c.isprintable() and c not in '<>:"/\\|?*')
        name = name.strip().lstrip(".")
        if not name:
            name = "document.pdf"
        if len(name) > 255:
            base, ext = os.path.splitext(name)
            name = base[:255 - len(ext)] + ext
        return name

    def stage(
        self,
        stream: BinaryIO,
        original_name: str,
        max_bytes: int,
        mime_type: str = "application/pdf",
    ) -> StagedFile:
        """
        Stream ``stream`` into the staging area.

        Raises:
            ValidationFailedError if the file is empty or larger than
            ``max_bytes``. The partial file is removed first.
        """
        file_name = self.make_file_name(original_name)
        path = self._staging_dir / file_name

        written = 0
        digest = hashlib.sha256()
        too_large = False
        with open(path, "wb") as f:
            while True:
                chunk = stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    too_large = True
                    break
                f.write(chunk)
                digest.update(chunk)

        if too_large or written == 0:
            path.unlink(missing_ok=True)
            if too_large:
                raise ValidationFailedError(
                    f"File size too large. Maximum size is {max_bytes // (1024 * 1024)}MB per file.",
                    resource="document",
                    validation_errors=[{"field": "documents", "message": f"{original_name} exceeds limit"}],
                )
            raise ValidationFailedError(
                "Uploaded file is empty",
                resource="document",
                validation_errors=[{"field": "documents", "message": f"{original_name} is empty"}],
            )

        logger.debug(f"Staged {original_name} as {file_name} ({written} bytes)")
        return StagedFile(
            original_name=original_name,
            file_name=file_name,
            path=path,
            size=written,
            sha256=digest.hexdigest(),
            mime_type=mime_type,
        )

    def promote(self, staged: StagedFile) -> StagedFile:
        """Rename a staged file into the upload root (same filesystem, no byte copy)."""
        if staged.promoted:
            return staged
        target = self._upload_dir / staged.file_name
        os.replace(staged.path, target)
        return dataclasses.replace(staged, path=target, promoted=True)

    def purge(self, files: Iterable[StagedFile]) -> int:
        """Remove staged or promoted files. Failures are logged, never raised."""
        removed = 0
        for staged in files:
            try:
                if staged.path.exists():
                    staged.path.unlink()
                    removed += 1
            except OSError as e:
                logger.error(f"Failed to purge {staged.path}: {e}")
        return removed

    def purge_paths(self, relative_paths: Iterable[str]) -> int:
        """Remove committed files by their stored relative path."""
        removed = 0
        for rel in relative_paths:
            try:
                path = self.resolve(rel)
            except NotFoundError:
                continue
            try:
                if path.exists():
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.error(f"Failed to delete {path}: {e}")
        return removed

    def resolve(self, relative_path: str) -> Path:
        """Absolute path of a stored file. Paths escaping the upload root are rejected."""
        path = (self._upload_dir / relative_path).resolve()
        if self._upload_dir not in path.parents:
            raise NotFoundError("File not found on server", resource="document")
        return path

    def exists(self, relative_path: str) -> bool:
        try:
            return self.resolve(relative_path).is_file()
        except NotFoundError:
            return False

    def __repr__(self) -> str:
        return f"<FileStore root='{self._upload_dir}'>"
