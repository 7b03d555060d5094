"""Unit tests for taskhub.documents.quota — admit(), TaskLockRegistry, QuotaGuard."""

import io
import threading

import pytest
from sqlalchemy import select

from taskhub.db.models import Document, Task
from taskhub.db.session import session_scope
from taskhub.documents.quota import (
    MAX_DOCS_PER_TASK,
    Admit,
    QuotaGuard,
    Reject,
    RejectReason,
    TaskLockRegistry,
    admit,
)
from taskhub.documents.storage import FileStore
from taskhub.engine.errors import ForbiddenError, NotFoundError, QuotaExceededError

PDF = b"%PDF-1.4 test\n%%EOF\n"


class TestAdmit:

    def test_default_cap_is_three(self):
        assert MAX_DOCS_PER_TASK == 3

    def test_full_task_rejects_with_zero_allowed(self):
        assert admit("t1", 1, 3) == Reject(RejectReason.QUOTA_EXCEEDED, 0)

    def test_exactly_filling_the_cap(self):
        assert admit("t1", 2, 1) == Admit(2)

    def test_batch_over_cap_reports_remaining(self):
        assert admit("t1", 3, 1) == Reject(RejectReason.QUOTA_EXCEEDED, 2)

    def test_empty_task(self):
        assert admit("t1", 3, 0) == Admit(3)

    def test_custom_cap(self):
        assert admit("t1", 5, 0, cap=5) == Admit(5)
        assert admit("t1", 1, 5, cap=5) == Reject(RejectReason.QUOTA_EXCEEDED, 0)


class TestTaskLockRegistry:

    def test_lock_dropped_after_use(self):
        locks = TaskLockRegistry()
        with locks.hold("t1"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_same_task_serialised(self):
        locks = TaskLockRegistry()
        inside = []
        overlap = []

        def worker():
            with locks.hold("t1"):
                inside.append(1)
                if len(inside) > 1:
                    overlap.append(True)
                threading.Event().wait(0.02)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlap == []
        assert len(locks) == 0

    def test_different_tasks_independent(self):
        locks = TaskLockRegistry()
        with locks.hold("t1"):
            with locks.hold("t2"):
                assert len(locks) == 2


class TestQuotaGuard:

    @pytest.fixture
    def store(self, config):
        return FileStore(config.documents.upload_dir, config.documents.staging_dir)

    @pytest.fixture
    def guard(self, session_factory, store):
        return QuotaGuard(session_factory, store)

    def _stage(self, store, n):
        return [store.stage(io.BytesIO(PDF), f"f{i}.pdf", 1024 * 1024) for i in range(n)]

    def _active(self, session_factory, task_id):
        with session_scope(session_factory) as session:
            return QuotaGuard.count_active(session, task_id)

    def test_admit_inserts_and_promotes(self, guard, store, session_factory, task_id, u1):
        staged = self._stage(store, 2)
        docs = guard.admit_batch(task_id, staged, u1)

        assert len(docs) == 2
        assert self._active(session_factory, task_id) == 2
        for doc in docs:
            assert (store.upload_dir / doc.file_path).is_file()
        assert list(store.staging_dir.iterdir()) == []

    def test_rejection_is_all_or_nothing(self, guard, store, session_factory, task_id, u1):
        guard.admit_batch(task_id, self._stage(store, 1), u1)
        staged = self._stage(store, 3)

        with pytest.raises(QuotaExceededError) as exc_info:
            guard.admit_batch(task_id, staged, u1)

        err = exc_info.value
        assert err.allowed_count == 2
        assert err.current_count == 1
        assert err.cap == 3
        assert "Cannot upload 3 files" in err.message
        assert self._active(session_factory, task_id) == 1
        assert all(not s.path.exists() for s in staged)
        assert len(list(store.upload_dir.glob("*.pdf"))) == 1

    def test_soft_delete_frees_quota(self, guard, store, session_factory, task_id, u1):
        docs = guard.admit_batch(task_id, self._stage(store, 3), u1)
        with pytest.raises(QuotaExceededError):
            guard.admit_batch(task_id, self._stage(store, 1), u1)

        guard.deactivate(task_id, docs[0].id)

        assert self._active(session_factory, task_id) == 2
        assert len(guard.admit_batch(task_id, self._stage(store, 1), u1)) == 1
        assert self._active(session_factory, task_id) == 3

    def test_concurrent_single_uploads_on_two_active(self, guard, store, session_factory, task_id, u1, u2):
        """Two racing one-document uploads on a task with 2 active: exactly one wins."""
        guard.admit_batch(task_id, self._stage(store, 2), u1)
        barrier = threading.Barrier(2)
        results = []

        def upload(actor):
            staged = self._stage(store, 1)
            barrier.wait()
            try:
                guard.admit_batch(task_id, staged, actor)
                results.append("ok")
            except QuotaExceededError as e:
                results.append(("rejected", e.allowed_count))

        threads = [threading.Thread(target=upload, args=(actor,)) for actor in (u1, u2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results, key=str) == sorted(["ok", ("rejected", 0)], key=str)
        assert self._active(session_factory, task_id) == 3
        assert list(store.staging_dir.iterdir()) == []

    def test_permission_rechecked_on_locked_row(self, guard, store, session_factory, task_id, u2, u3):
        """The assignee loses upload rights once the task is handed to someone else."""
        with session_scope(session_factory) as session:
            session.get(Task, task_id).assigned_to = u3.id
        staged = self._stage(store, 1)

        with pytest.raises(ForbiddenError):
            guard.admit_batch(task_id, staged, u2)

        assert self._active(session_factory, task_id) == 0
        assert not staged[0].path.exists()
        assert list(store.upload_dir.glob("*.pdf")) == []

    def test_missing_task_purges_staged(self, guard, store, u1):
        staged = self._stage(store, 1)
        with pytest.raises(NotFoundError):
            guard.admit_batch("missing", staged, u1)
        assert not staged[0].path.exists()

    def test_deactivate_rejects_inactive_document(self, guard, store, task_id, u1):
        doc = guard.admit_batch(task_id, self._stage(store, 1), u1)[0]
        guard.deactivate(task_id, doc.id)
        with pytest.raises(NotFoundError):
            guard.deactivate(task_id, doc.id)

    def test_deactivate_rejects_document_of_other_task(self, guard, store, session_factory, task_id, u1):
        doc = guard.admit_batch(task_id, self._stage(store, 1), u1)[0]
        with session_scope(session_factory) as session:
            other = Task(title="Other", created_by=u1.id)
            session.add(other)
            session.flush()
            other_id = other.id

        with pytest.raises(NotFoundError):
            guard.deactivate(other_id, doc.id)

    def test_deactivate_keeps_file(self, guard, store, session_factory, task_id, u1):
        doc = guard.admit_batch(task_id, self._stage(store, 1), u1)[0]
        guard.deactivate(task_id, doc.id)

        with session_scope(session_factory) as session:
            row = session.scalars(select(Document).where(Document.id == doc.id)).one()
            assert row.is_active is False
        assert (store.upload_dir / doc.file_path).is_file()
