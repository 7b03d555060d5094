"""
TaskHub Document Service — upload, list, download/view and soft delete.

Handles:
- Transport bounds (file count, size, PDF only) before anything else
- Existence, then permission, then quota (via QuotaGuard)
- Staging bytes outside the quota lock; purging them on every failed path
- Atomic download counter
- Soft delete through the guard (physical bytes are retained)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload, sessionmaker

from taskhub.db.models import Document, Task
from taskhub.db.session import session_scope
from taskhub.documents.quota import QuotaGuard
from taskhub.documents.storage import FileStore, StagedFile
from taskhub.engine.context import Actor
from taskhub.engine.errors import (
    ForbiddenError,
    NotFoundError,
    QuotaExceededError,
    ValidationFailedError,
)
from taskhub.engine.logging import log, log_document_event
from taskhub.realtime.notifier import ChangeNotifier, EventKind
from taskhub.schemas import DocumentOut
from taskhub.security.permissions import (
    DocumentOperation,
    TaskOperation,
    TaskRef,
    can_access_document,
    can_access_task,
)

logger = logging.getLogger("taskhub.documents.service")


@dataclass
class Upload:
    """One file of a multipart upload."""
    filename: str
    content_type: Optional[str]
    stream: BinaryIO


@dataclass(frozen=True)
class DownloadTarget:
    path: Path
    original_name: str
    mime_type: str
    file_size: int


class DocumentService:
    """Document workflow for one upload root."""

    def __init__(
        self,
        session_factory: sessionmaker,
        guard: QuotaGuard,
        file_store: FileStore,
        notifier: ChangeNotifier,
        max_file_size_bytes: int = 5 * 1024 * 1024,
        max_files_per_request: int = 3,
        allowed_mime_types: Sequence[str] = ("application/pdf",),
    ):
        self._session_factory = session_factory
        self._guard = guard
        self._store = file_store
        self._notifier = notifier
        self._max_file_size = max_file_size_bytes
        self._max_files = max_files_per_request
        self._allowed_mime_types = tuple(allowed_mime_types)

    # -------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------

    def validate_uploads(self, uploads: Sequence[Upload]) -> None:
        """Count and type checks. Size is enforced while staging."""
        if not uploads:
            raise ValidationFailedError("No files uploaded", resource="document")
        if len(uploads) > self._max_files:
            raise ValidationFailedError(
                f"Too many files. Maximum {self._max_files} files allowed per upload.",
                resource="document",
            )
        for upload in uploads:
            ext = os.path.splitext(upload.filename or "")[1].lower()
            if upload.content_type not in self._allowed_mime_types or ext != ".pdf":
                raise ValidationFailedError(
                    "Only PDF files are allowed",
                    resource="document",
                    validation_errors=[{"field": "documents", "message": f"{upload.filename} is not a PDF"}],
                )

    def upload(self, actor: Actor, task_id: str, uploads: Sequence[Upload]) -> List[DocumentOut]:
        """
        Attach a batch of PDFs to a task, all or nothing.

        Raises:
            ValidationFailedError, NotFoundError, ForbiddenError,
            QuotaExceededError — in that order of precedence.
        """
        self.validate_uploads(uploads)

        with session_scope(self._session_factory) as session:
            task = self._load_task(session, task_id)
            if not can_access_task(actor, task, TaskOperation.UPLOAD_DOCUMENT):
                raise ForbiddenError(
                    "Access denied",
                    resource="task",
                    resource_id=task_id,
                    actor_id=actor.id,
                    operation=TaskOperation.UPLOAD_DOCUMENT.value,
                )

        staged: List[StagedFile] = []
        try:
            for upload in uploads:
                staged.append(
                    self._store.stage(
                        upload.stream,
                        FileStore.safe_original_name(upload.filename),
                        self._max_file_size,
                        mime_type=upload.content_type,
                    )
                )
            documents = self._guard.admit_batch(task_id, staged, actor)
        except QuotaExceededError as e:
            self._store.purge(staged)
            log(log_document_event(
                "quota_rejected",
                task_id,
                actor.id,
                request_id=actor.request_id,
                allowed_count=e.allowed_count,
                level="WARNING",
            ))
            raise
        except Exception:
            self._store.purge(staged)
            raise

        ids = [d.id for d in documents]
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(Document)
                .where(Document.id.in_(ids))
                .options(selectinload(Document.uploader))
                .order_by(Document.created_at.desc())
            ).all()
            out = [DocumentOut.model_validate(d) for d in rows]
            ref = TaskRef.of(self._load_task(session, task_id))

        total = sum(d.file_size for d in out)
        logger.info(f"{len(out)} document(s) uploaded to task {task_id} by {actor.id} ({total} bytes)")
        log(log_document_event(
            "documents_uploaded",
            task_id,
            actor.id,
            request_id=actor.request_id,
            document_ids=ids,
            bytes_total=total,
        ))

        self._notifier.notify_task(
            EventKind.DOCUMENTS_UPLOADED,
            ref,
            {"taskId": task_id, "documents": [d.dump() for d in out]},
        )
        return out

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def list_for_task(self, actor: Actor, task_id: str) -> List[DocumentOut]:
        """Active documents of a task, newest first."""
        with session_scope(self._session_factory) as session:
            task = self._load_task(session, task_id)
            if not can_access_task(actor, task, TaskOperation.READ):
                raise ForbiddenError(
                    "Access denied",
                    resource="task",
                    resource_id=task_id,
                    actor_id=actor.id,
                    operation=TaskOperation.READ.value,
                )
            rows = session.scalars(
                select(Document)
                .where(Document.task_id == task_id, Document.is_active.is_(True))
                .options(selectinload(Document.uploader))
                .order_by(Document.created_at.desc())
            ).all()
            return [DocumentOut.model_validate(d) for d in rows]

    def open_for_download(self, actor: Actor, document_id: str, inline: bool = False) -> DownloadTarget:
        """
        Resolve a document to a file on disk.

        Attachment downloads (``inline=False``) bump ``download_count``
        atomically; inline views do not.
        """
        with session_scope(self._session_factory) as session:
            doc, task = self._load_active(session, document_id)
            self._require(actor, doc, task, DocumentOperation.READ)

            path = self._store.resolve(doc.file_path)
            if not path.is_file():
                raise NotFoundError("File not found on server", resource="document", resource_id=document_id)

            if not inline:
                session.execute(
                    update(Document)
                    .where(Document.id == document_id)
                    .values(download_count=Document.download_count + 1)
                )
            return DownloadTarget(
                path=path,
                original_name=doc.original_name,
                mime_type=doc.mime_type,
                file_size=doc.file_size,
            )

    # -------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------

    def delete(self, actor: Actor, document_id: str) -> None:
        """
        Soft-delete a document, freeing one slot of the task's quota.

        The file stays on disk; the retained bytes are logged.
        """
        with session_scope(self._session_factory) as session:
            doc, task = self._load_active(session, document_id)
            self._require(
                actor,
                doc,
                task,
                DocumentOperation.DELETE,
                message="Access denied. Only document uploader, task creator, or admin can delete documents.",
            )
            task_id = task.id
            ref = TaskRef.of(task)
            retained = doc.file_size

        self._guard.deactivate(task_id, document_id)

        logger.info(f"Document {document_id} deactivated by {actor.id}; {retained} bytes retained on disk")
        log(log_document_event(
            "document_deleted",
            task_id,
            actor.id,
            request_id=actor.request_id,
            document_ids=[document_id],
            bytes_total=retained,
        ))

        self._notifier.notify_task(
            EventKind.DOCUMENT_DELETED,
            ref,
            {"taskId": task_id, "documentId": document_id},
        )

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    @staticmethod
    def _load_task(session: Session, task_id: str) -> Task:
        task = session.get(Task, task_id)
        if task is None:
            raise NotFoundError("Task not found", resource="task", resource_id=task_id)
        return task

    @staticmethod
    def _load_active(session: Session, document_id: str) -> Tuple[Document, Task]:
        doc = session.get(Document, document_id)
        if doc is None or not doc.is_active:
            raise NotFoundError("Document not found", resource="document", resource_id=document_id)
        return doc, doc.task

    @staticmethod
    def _require(
        actor: Actor,
        doc: Document,
        task: Task,
        op: DocumentOperation,
        message: str = "Access denied",
    ) -> None:
        if not can_access_document(actor, doc, task, op):
            raise ForbiddenError(
                message,
                resource="document",
                resource_id=doc.id,
                actor_id=actor.id,
                operation=op.value,
            )
