import pytest
from fastapi.testclient import TestClient

from ratebook_ingest.api import create_app

XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@pytest.fixture
def client(session_factory, catalog_vehicles):
    return TestClient(create_app(session_factory=session_factory))


def upload(client, content, file_name="venus_march.xlsx", url="/imports", **form):
    data = {"provider_code": "venus", "contract_type": "BCH", **form}
    return client.post(url, files={"file": (file_name, content, XLSX)}, data=data)


def match_id(client, search):
    matches = client.get("/matches", params={"search": search}).json()
    assert len(matches) == 1
    return matches[0]["id"]


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestImportRoutes:
    def test_import_then_duplicate(self, client, venus_workbook):
        response = upload(client, venus_workbook)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["total_rates"] == 18
        assert body["sheets_processed"] == ["Ford_"]
        assert body["sheets_skipped"][0]["sheet"] == "Bulletins"

        duplicate = upload(client, venus_workbook)
        assert duplicate.status_code == 409
        assert duplicate.json()["batch_id"] == body["batch_id"]

        listed = client.get("/imports", params={"provider": "venus"}).json()
        assert [b["batch_id"] for b in listed] == [body["batch_id"]]
        detail = client.get(f"/imports/{body['batch_id']}").json()
        assert detail["is_latest"] is True
        assert detail["error_log"] == []

    def test_dry_run(self, client, venus_workbook):
        body = upload(client, venus_workbook, dry_run="true").json()
        assert body["status"] == "dry_run"
        assert body["batch_id"] is None
        assert client.get("/imports").json() == []

    def test_bad_overrides(self, client, venus_workbook):
        assert upload(client, venus_workbook, column_overrides="{not json").status_code == 400
        assert upload(client, venus_workbook, column_overrides='["a"]').status_code == 400

    def test_missing_required_mapping(self, client):
        response = upload(client, b"Make,Model,Rental\nFord,Focus,299\n", file_name="lex.csv", provider_code="lex")
        assert response.status_code == 422
        assert response.json()["problems"] == ["p11d"]

    def test_unsupported_file(self, client):
        response = upload(client, b"%PDF-1.4", file_name="rates.pdf")
        assert response.status_code == 422

    def test_unknown_batch(self, client):
        assert client.get("/imports/venus_BCH_missing").status_code == 404
        assert client.post("/imports/venus_BCH_missing/abort").status_code == 404

    def test_analyze(self, client, ald_csv):
        response = upload(client, ald_csv, file_name="ald.csv", url="/imports/analyze", provider_code="ald")
        assert response.status_code == 200
        assert response.json()["sheets"][0]["rate_count"] == 3

    def test_queue_and_job_status(self, client, venus_workbook):
        response = upload(client, venus_workbook, url="/imports/queue")
        assert response.status_code == 202
        job = response.json()
        assert job["status"] == "pending"

        fetched = client.get(f"/imports/jobs/{job['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["file_name"] == "venus_march.xlsx"
        assert client.get("/imports/jobs/missing").status_code == 404


class TestMatchRoutes:
    def test_review_flow(self, client, venus_workbook):
        upload(client, venus_workbook)

        stats = client.get("/matches/stats").json()
        assert stats["total"] == 3
        assert stats["by_status"]["pending"] == 3
        assert len(client.get("/matches", params={"status": "pending"}).json()) == 3
        assert client.get("/matches", params={"status": "bogus"}).status_code == 422

        kuga = match_id(client, "Kuga")
        assert client.post(f"/matches/{kuga}/confirm").status_code == 409
        assert client.post(f"/matches/{kuga}/manual", json={"cap_code": "  "}).status_code == 422
        assert client.post(f"/matches/{kuga}/manual", json={"cap_code": "NOSUCHCODE"}).status_code == 404

        focus = match_id(client, "Focus")
        confirmed = client.post(f"/matches/{focus}/confirm", json={"user": "ops"})
        assert confirmed.status_code == 200
        assert confirmed.json()["confirmed_by"] == "ops"
        assert confirmed.json()["cap_code"] == "FOFO10STL5HPTM"

        compared = client.get("/rates/compare/FOFO10STL5HPTM").json()
        assert len(compared["rates"]) == 6
        assert compared["providers"] == ["venus"]

        reset = client.post(f"/matches/{focus}/reset")
        assert reset.json()["match_status"] == "pending"
        assert client.get("/matches/999").status_code == 404


class TestMappingRoutes:
    def test_crud(self, client):
        assert client.get("/mappings/lex").status_code == 404

        saved = client.put("/mappings/lex", json={"column_mappings": {"Cost": "monthly_rental"}, "user": "ops"})
        assert saved.status_code == 200
        assert saved.json()["version"] == 1
        assert client.get("/mappings/lex").json()["column_mappings"] == {"Cost": "monthly_rental"}

        assert client.put("/mappings/lex", json={"column_mappings": {"Cost": "paint"}}).status_code == 422
        assert client.put("/mappings/lex", json={"column_mappings": {}}).status_code == 422

        assert client.delete("/mappings/lex").status_code == 204
        assert client.delete("/mappings/lex").status_code == 404


class TestRateRoutes:
    def test_latest_rates_and_gaps(self, client, venus_workbook, ald_csv):
        upload(client, venus_workbook)
        upload(client, ald_csv, file_name="ald.csv", provider_code="ald")

        rates = client.get("/rates", params={"provider": "venus", "limit": 5}).json()
        assert len(rates) == 5
        assert rates[0]["total_rental"] <= rates[-1]["total_rental"]

        ald = client.get("/rates", params={"provider": "ald", "min_score": 85}).json()
        assert [(r["cap_code"], r["score_label"]) for r in ald] == [("KIAEV6GTL5EVA", "Exceptional")]

        gaps = client.get("/rates/gaps", params=[("providers", "venus"), ("providers", "ald")]).json()
        assert {g["cap_code"] for g in gaps} == {"FOFO10STL5HPTM", "KIAEV6GTL5EVA"}
        assert all(g["missing"] == ["venus"] for g in gaps)
