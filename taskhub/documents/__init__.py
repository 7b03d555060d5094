"""TaskHub documents — file store, per-task quota guard and document workflow."""

from taskhub.documents.quota import MAX_DOCS_PER_TASK, Admit, QuotaGuard, Reject, RejectReason, TaskLockRegistry, admit
from taskhub.documents.service import DocumentService, DownloadTarget, Upload
from taskhub.documents.storage import FileStore, StagedFile

__all__ = [
    "MAX_DOCS_PER_TASK",
    "Admit",
    "DocumentService",
    "DownloadTarget",
    "FileStore",
    "QuotaGuard",
    "Reject",
    "RejectReason",
    "StagedFile",
    "TaskLockRegistry",
    "Upload",
    "admit",
]
