"""
TaskHub Document Quota Guard — at most ``MAX_DOCS_PER_TASK`` active documents per task.

``admit`` is the pure decision. ``QuotaGuard`` makes count-check-and-insert
atomic per task:

    per-task mutex (this process)
      └── transaction
            ├── SELECT ... FROM tasks WHERE id = :task FOR UPDATE   (other processes)
            ├── re-check upload permission on the locked row
            ├── COUNT active documents
            ├── admit()
            ├── INSERT documents, promote staged files
            └── COMMIT

Soft delete takes the same locks, so admissions and deactivations on one
task never interleave. A batch is all-or-nothing: on rejection or any error
the staged and promoted bytes of the batch are purged before the exception
propagates.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from taskhub.db.models import Document, Task
from taskhub.db.session import session_scope
from taskhub.documents.storage import FileStore, StagedFile
from taskhub.engine.context import Actor
from taskhub.engine.errors import ForbiddenError, NotFoundError, QuotaExceededError
from taskhub.security.permissions import TaskOperation, can_access_task

logger = logging.getLogger("taskhub.documents.quota")

MAX_DOCS_PER_TASK = 3


class RejectReason(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"


@dataclass(frozen=True)
class Admit:
    count: int


@dataclass(frozen=True)
class Reject:
    reason: RejectReason
    allowed_count: int


Decision = Union[Admit, Reject]


def admit(
    task_id: str,
    incoming_count: int,
    current_active_count: int,
    cap: int = MAX_DOCS_PER_TASK,
) -> Decision:
    """Admit the whole batch or reject it, reporting how many would still fit."""
    if current_active_count + incoming_count > cap:
        return Reject(RejectReason.QUOTA_EXCEEDED, max(0, cap - current_active_count))
    return Admit(incoming_count)


class TaskLockRegistry:
    """
    One mutex per task id, created on demand and dropped when unused.

    Only tasks with an operation in flight have an entry.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def hold(self, task_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = self._locks[task_id] = threading.Lock()
            self._users[task_id] = self._users.get(task_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[task_id] -= 1
                if self._users[task_id] == 0:
                    del self._users[task_id]
                    del self._locks[task_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class QuotaGuard:
    """Serializes every change to a task's active document count."""

    def __init__(
        self,
        session_factory: sessionmaker,
        file_store: FileStore,
        cap: int = MAX_DOCS_PER_TASK,
        locks: Optional[TaskLockRegistry] = None,
    ):
        self._session_factory = session_factory
        self._store = file_store
        self._cap = cap
        self._locks = locks or TaskLockRegistry()

    @property
    def cap(self) -> int:
        return self._cap

    @staticmethod
    def count_active(session: Session, task_id: str) -> int:
        return session.scalar(
            select(func.count(Document.id)).where(
                Document.task_id == task_id,
                Document.is_active.is_(True),
            )
        )

    @staticmethod
    def _lock_task(session: Session, task_id: str) -> Task:
        task = session.execute(
            select(Task).where(Task.id == task_id).with_for_update()
        ).scalar_one_or_none()
        if task is None:
            raise NotFoundError("Task not found", resource="task", resource_id=task_id)
        return task

    def admit_batch(
        self,
        task_id: str,
        staged_files: Sequence[StagedFile],
        actor: Actor,
    ) -> List[Document]:
        """
        Insert one Document per staged file, or none.

        Upload permission is decided again on the locked task row, since the
        task may have been reassigned while the bytes were staged.

        Raises:
            ForbiddenError when ``actor`` may no longer upload to the task.
            QuotaExceededError when the batch would push the task over the cap.
            NotFoundError when the task vanished after staging.
        """
        promoted: List[StagedFile] = []
        try:
            with self._locks.hold(task_id):
                with session_scope(self._session_factory) as session:
                    task = self._lock_task(session, task_id)
                    if not can_access_task(actor, task, TaskOperation.UPLOAD_DOCUMENT):
                        raise ForbiddenError(
                            "Access denied",
                            resource="task",
                            resource_id=task_id,
                            actor_id=actor.id,
                            operation=TaskOperation.UPLOAD_DOCUMENT.value,
                        )
                    current = self.count_active(session, task_id)
                    decision = admit(task_id, len(staged_files), current, self._cap)

                    if isinstance(decision, Reject):
                        raise QuotaExceededError(
                            f"Cannot upload {len(staged_files)} files. Task can have maximum "
                            f"{self._cap} documents. Current count: {current}",
                            resource="task",
                            resource_id=task_id,
                            actor_id=actor.id,
                            allowed_count=decision.allowed_count,
                            current_count=current,
                            cap=self._cap,
                        )

                    documents = []
                    for staged in staged_files:
                        final = self._store.promote(staged)
                        promoted.append(final)
                        doc = Document(
                            task_id=task_id,
                            uploaded_by=actor.id,
                            original_name=staged.original_name,
                            file_name=final.file_name,
                            file_path=final.relative_path,
                            file_size=final.size,
                            mime_type=final.mime_type,
                            download_count=0,
                            is_active=True,
                        )
                        session.add(doc)
                        documents.append(doc)
                    session.flush()
        except Exception:
            self._store.purge(list(staged_files) + promoted)
            raise

        logger.info(f"Admitted {len(documents)} document(s) to task {task_id}")
        return documents

    def deactivate(self, task_id: str, document_id: str) -> Document:
        """
        Soft-delete a document under the task's locks.

        Raises:
            NotFoundError if the document is gone, already inactive or
            belongs to another task.
        """
        with self._locks.hold(task_id):
            with session_scope(self._session_factory) as session:
                self._lock_task(session, task_id)
                doc = session.get(Document, document_id)
                if doc is None or not doc.is_active or doc.task_id != task_id:
                    raise NotFoundError("Document not found", resource="document", resource_id=document_id)
                doc.is_active = False
                session.flush()
        logger.info(f"Deactivated document {document_id} of task {task_id}")
        return doc
