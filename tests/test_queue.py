import pytest

from ratebook_ingest.exceptions import InvalidJobTransition, JobNotFound
from ratebook_ingest.imports.importer import RatebookImporter
from ratebook_ingest.imports.queue import ImportQueue, ImportWorker
from ratebook_ingest.repositories.rates import RateRepository


@pytest.fixture
def queue(session_factory):
    return ImportQueue(session_factory)


class TestImportQueue:
    def test_enqueue_and_claim(self, queue):
        job = queue.enqueue("Venus", "bch", "venus.xlsx", b"content", options={"force_reimport": True})
        assert job["status"] == "pending"
        assert (job["provider_code"], job["contract_type"]) == ("venus", "BCH")

        claimed = queue.claim_next()
        assert claimed["id"] == job["id"]
        assert claimed["status"] == "running"
        assert claimed["content"] == b"content"
        assert claimed["options"] == {"force_reimport": True}
        assert claimed["started_at"] is not None
        assert queue.claim_next() is None

    def test_one_running_job_per_provider_and_contract(self, queue):
        queue.enqueue("venus", "BCH", "a.xlsx", b"a")
        queue.enqueue("venus", "BCH", "b.xlsx", b"b")
        queue.enqueue("venus", "PCH", "c.xlsx", b"c")
        queue.enqueue("ald", "BCH", "d.csv", b"d")

        first = queue.claim_next(provider_code="venus")
        assert first["file_name"] == "a.xlsx"
        second = queue.claim_next(provider_code="venus")
        assert second["file_name"] == "c.xlsx"
        assert queue.claim_next(provider_code="venus") is None
        assert queue.claim_next()["file_name"] == "d.csv"

        queue.complete(first["id"], batch_id="venus_BCH_x")
        assert queue.claim_next(provider_code="venus")["file_name"] == "b.xlsx"

    def test_transitions(self, queue):
        job = queue.enqueue("venus", "BCH", "a.xlsx", b"a")
        with pytest.raises(InvalidJobTransition):
            queue.complete(job["id"], batch_id=None)

        queue.claim_next()
        failed = queue.fail(job["id"], "boom")
        assert failed["status"] == "error"
        assert failed["error_message"] == "boom"
        assert failed["finished_at"] is not None
        with pytest.raises(InvalidJobTransition):
            queue.complete(job["id"], batch_id=None)

    def test_unknown_job(self, queue):
        with pytest.raises(JobNotFound):
            queue.get("missing")

    def test_list_jobs_by_status(self, queue):
        queue.enqueue("venus", "BCH", "a.xlsx", b"a")
        queue.enqueue("ald", "BCH", "b.csv", b"b")
        queue.claim_next(provider_code="ald")
        assert [j["file_name"] for j in queue.list_jobs(status="pending")] == ["a.xlsx"]
        assert len(queue.list_jobs()) == 2


class TestImportWorker:
    def test_run_once_imports_and_completes(self, queue, session_factory, catalog_vehicles, venus_workbook):
        worker = ImportWorker(queue, RatebookImporter(session_factory))
        job = queue.enqueue("venus", "BCH", "venus.xlsx", venus_workbook)

        finished = worker.run_once()
        assert finished["id"] == job["id"]
        assert finished["status"] == "complete"
        batch = RateRepository(session_factory).get_import(finished["batch_id"])
        assert batch["status"] == "completed"
        assert worker.run_once() is None

    def test_import_error_fails_the_job(self, queue, session_factory, catalog_vehicles):
        worker = ImportWorker(queue, RatebookImporter(session_factory))
        queue.enqueue("venus", "BCH", "rates.pdf", b"%PDF-1.4")

        finished = worker.run_once()
        assert finished["status"] == "error"
        assert ".pdf" in finished["error_message"]
        assert finished["batch_id"] is None

    def test_crash_fails_job_and_batch(self, queue, session_factory, catalog_vehicles, venus_workbook, monkeypatch):
        importer = RatebookImporter(session_factory)
        worker = ImportWorker(queue, importer)
        job = queue.enqueue("venus", "BCH", "venus.xlsx", venus_workbook)

        def crash(*args, **kwargs):
            raise RuntimeError("catalog unavailable")

        monkeypatch.setattr(importer.batch_manager, "process_rows", crash)
        with pytest.raises(RuntimeError):
            worker.run_once()

        assert queue.get(job["id"])["status"] == "error"
        [batch] = RateRepository(session_factory).list_imports(provider="venus")
        assert batch["status"] == "failed"
