import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError

from ratebook_ingest.config.settings import reset_settings
from ratebook_ingest.db.session import init_db, make_session_factory
from ratebook_ingest.exceptions import (
    BatchNotFound, DuplicateFileError, ImportAborted, RowParseError,
)
from ratebook_ingest.imports.batch_manager import (
    LATEST_LOCK_STRIPES, ImportBatchManager, _latest_lock, _latest_locks, hash_content,
)
from ratebook_ingest.repositories.rates import RateRepository

from .conftest import make_rate

CONTENT = b"venus ratebook march"


@pytest.fixture
def manager(session_factory, catalog_vehicles):
    return ImportBatchManager(session_factory)


def run_import(manager, rows, content=CONTENT, force=False):
    batch_id = manager.start_import("Venus", "bch", "venus.xlsx", content, force=force)
    manager.process_rows(batch_id, rows)
    return manager.finalize(batch_id)


class TestStartImport:
    def test_new_batch_is_processing_and_not_latest(self, manager):
        batch_id = manager.start_import("Venus", "bch", "venus.xlsx", CONTENT)
        assert batch_id.startswith("venus_BCH_")
        batch = manager.get_batch(batch_id)
        assert batch["status"] == "processing"
        assert batch["is_latest"] is False
        assert batch["file_hash"] == hash_content(CONTENT)

    def test_completed_content_is_a_duplicate(self, manager):
        first = run_import(manager, [make_rate()])
        with pytest.raises(DuplicateFileError) as exc:
            manager.start_import("venus", "BCH", "copy.xlsx", CONTENT)
        assert exc.value.batch_id == first["batch_id"]

    def test_force_reimport_supersedes_latest(self, manager):
        first = run_import(manager, [make_rate()])
        second = run_import(manager, [make_rate()], force=True)

        assert second["status"] == "completed"
        assert second["is_latest"] is True
        assert second["superseded_import_id"] == first["id"]
        assert manager.get_batch(first["batch_id"])["is_latest"] is False

    def test_failed_import_does_not_block(self, manager):
        failed = run_import(manager, [])
        assert failed["status"] == "failed"
        retry = run_import(manager, [make_rate()])
        assert retry["status"] == "completed"

    def test_unknown_batch(self, manager):
        with pytest.raises(BatchNotFound):
            manager.get_batch("venus_BCH_missing")


class TestProcessRows:
    def test_totals_and_cap_codes(self, manager):
        batch = run_import(manager, [
            make_rate(),
            make_rate(term=48),
            make_rate(manufacturer="Ford", model="Focus", variant=None, cap_code="FOFO10STL5HPTM"),
        ])
        assert batch["status"] == "completed"
        assert (batch["total_rows"], batch["success_rows"], batch["error_rows"]) == (3, 3, 0)
        assert batch["unique_cap_codes"] == 2

    def test_failed_chunk_counts_every_row(self, session_factory, catalog_vehicles):
        manager = ImportBatchManager(session_factory, chunk_size=2)
        batch = run_import(manager, [make_rate(), make_rate(term=48), make_rate(term=0), make_rate(term=24)])

        assert (batch["total_rows"], batch["success_rows"], batch["error_rows"]) == (4, 2, 2)
        assert batch["status"] == "completed"
        assert batch["error_log"][0].startswith("Chunk 1 (2 rows) failed: IntegrityError")

    def test_transient_errors_are_retried(self, session_factory, catalog_vehicles, monkeypatch):
        monkeypatch.setenv("CHUNK_RETRY_BACKOFF_SECONDS", "0")
        reset_settings()
        manager = ImportBatchManager(session_factory)
        real_persist = manager._persist_chunk
        calls = []

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("INSERT", {}, Exception("connection lost"))
            return real_persist(*args, **kwargs)

        monkeypatch.setattr(manager, "_persist_chunk", flaky)
        batch = run_import(manager, [make_rate()])
        assert len(calls) == 3
        assert batch["status"] == "completed"
        assert batch["success_rows"] == 1

    def test_retries_are_bounded(self, session_factory, catalog_vehicles, monkeypatch):
        monkeypatch.setenv("CHUNK_RETRY_BACKOFF_SECONDS", "0")
        reset_settings()
        manager = ImportBatchManager(session_factory)

        def down(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("connection lost"))

        monkeypatch.setattr(manager, "_persist_chunk", down)
        batch = run_import(manager, [make_rate(), make_rate(term=48)])
        assert batch["status"] == "failed"
        assert batch["error_rows"] == 2
        assert "OperationalError" in batch["error_log"][0]

    def test_failed_batch_keeps_previous_latest(self, manager):
        good = run_import(manager, [make_rate()])
        bad = run_import(manager, [make_rate(term=0)], content=b"broken upload")

        assert bad["status"] == "failed"
        assert bad["is_latest"] is False
        assert manager.get_batch(good["batch_id"])["is_latest"] is True

    def test_error_log_is_capped(self, manager):
        batch_id = manager.start_import("venus", "BCH", "venus.xlsx", CONTENT)
        manager.record_parse_errors(batch_id, [RowParseError("Ford_", i, "bad price") for i in range(150)])
        batch = manager.get_batch(batch_id)
        assert batch["error_rows"] == 150
        assert batch["total_rows"] == 150
        assert len(batch["error_log"]) == 100
        assert batch["error_log"][0] == "Ford_ row 1: bad price"


class TestAbort:
    def test_abort_marks_failed_and_stops_processing(self, manager):
        batch_id = manager.start_import("venus", "BCH", "venus.xlsx", CONTENT)
        aborted = manager.abort(batch_id, "operator request")
        assert aborted["status"] == "failed"
        assert aborted["details"]["aborted"] == "operator request"

        with pytest.raises(ImportAborted):
            manager.process_rows(batch_id, [make_rate()])
        assert manager.finalize(batch_id)["is_latest"] is False

    def test_cancel_event(self, manager):
        batch_id = manager.start_import("venus", "BCH", "venus.xlsx", CONTENT)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ImportAborted):
            manager.process_rows(batch_id, [make_rate()], cancel_event=cancel)
        batch = manager.get_batch(batch_id)
        assert batch["status"] == "failed"
        assert batch["details"]["aborted"] == "cancelled"
        assert batch["success_rows"] == 0


@pytest.fixture
def file_session_factory(tmp_path):
    """On-disk SQLite so each thread gets its own connection."""
    eng = create_engine(f"sqlite:///{tmp_path / 'ratebook.db'}", connect_args={"timeout": 30})
    init_db(eng)
    yield make_session_factory(eng)
    eng.dispose()


class TestLatestPointer:
    def test_concurrent_finalize_leaves_one_latest(self, file_session_factory):
        manager = ImportBatchManager(file_session_factory)
        batch_ids = []
        for n in range(4):
            batch_id = manager.start_import("venus", "BCH", f"venus_{n}.xlsx", f"upload {n}".encode())
            manager.process_rows(batch_id, [make_rate()])
            batch_ids.append(batch_id)

        barrier = threading.Barrier(len(batch_ids))
        errors = []

        def finalize(batch_id):
            try:
                barrier.wait()
                manager.finalize(batch_id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=finalize, args=(b,)) for b in batch_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        imports = RateRepository(file_session_factory).list_imports(provider="venus", contract_type="BCH")
        assert {b["status"] for b in imports} == {"completed"}
        assert sum(1 for b in imports if b["is_latest"]) == 1

    def test_latest_locks_are_a_fixed_pool(self):
        assert _latest_lock("venus", "BCH") is _latest_lock("venus", "BCH")
        for n in range(1000):
            assert _latest_lock("venus", f"CT{n}") in _latest_locks
        assert len(_latest_locks) == LATEST_LOCK_STRIPES
