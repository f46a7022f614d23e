import pytest

from ratebook_ingest.exceptions import DuplicateFileError, ValidationError
from ratebook_ingest.imports.importer import RatebookImporter
from ratebook_ingest.matching.catalog import SqlCatalog
from ratebook_ingest.repositories.rates import RateRepository


@pytest.fixture
def importer(session_factory, catalog_vehicles):
    return RatebookImporter(session_factory)


@pytest.fixture
def repository(session_factory):
    return RateRepository(session_factory)


class TestVenusMatrixImport:
    def test_two_sheet_workbook(self, importer, repository, venus_workbook):
        result = importer.import_file("venus", None, "venus_march.xlsx", venus_workbook)

        assert result.status == "completed"
        assert result.total_rates == 18
        assert (result.total_rows, result.success_rows, result.error_rows) == (18, 18, 0)
        assert result.sheets_processed == ["Ford_"]
        assert [s["sheet"] for s in result.sheets_skipped] == ["Bulletins"]

        rates = repository.latest_rates(provider="venus")
        assert len(rates) == 18
        assert {r["manufacturer"] for r in rates} == {"Ford"}
        assert {r["contract_type"] for r in rates} == {"BCH"}
        assert {r["term"] for r in rates} == {24, 36, 48}
        assert rates[0]["total_rental"] == 27900

        batch = repository.get_import(result.batch_id)
        assert batch["is_latest"] is True
        assert batch["details"]["sheets_processed"] == ["Ford_"]

    def test_same_file_twice_is_rejected(self, importer, repository, venus_workbook):
        first = importer.import_file("venus", "BCH", "venus_march.xlsx", venus_workbook)
        with pytest.raises(DuplicateFileError) as exc:
            importer.import_file("venus", "BCH", "venus_march_copy.xlsx", venus_workbook)
        assert exc.value.batch_id == first.batch_id

        forced = importer.import_file("venus", "BCH", "venus_march.xlsx", venus_workbook, force_reimport=True)
        assert forced.status == "completed"
        assert forced.batch_id != first.batch_id

        latest = repository.latest_rates(provider="venus")
        assert {r["batch_id"] for r in latest} == {forced.batch_id}
        assert len(repository.latest_rates(provider="venus", include_history=True)) == 36

    def test_dry_run_writes_nothing(self, importer, repository, venus_workbook):
        result = importer.import_file("venus", "BCH", "venus_march.xlsx", venus_workbook, dry_run=True)
        assert result.status == "dry_run"
        assert result.batch_id is None
        assert result.total_rates == 18
        assert repository.list_imports() == []


class TestTabularImport:
    def test_ald_csv(self, importer, repository, session_factory, ald_csv):
        result = importer.import_file("ald", "bch", "ald_rates.csv", ald_csv)

        assert result.status == "completed"
        assert result.total_rates == 3
        assert (result.total_rows, result.success_rows, result.error_rows) == (4, 3, 1)
        assert result.unique_cap_codes == 2
        assert "unparseable rental 'POA'" in result.errors[0]

        created = SqlCatalog(session_factory).lookup_vehicle_by_cap_code("KIAEV6GTL5EVA")
        assert (created.manufacturer, created.model, created.p11d) == ("Kia", "EV6", 4700000)

        focus = repository.compare_by_cap_code("FOFO10STL5HPTM")
        assert [r["term"] for r in focus["rates"]] == [48, 36]
        assert focus["rates"][1]["total_rental"] == 29999
        assert focus["rates"][1]["score"] == 80
        assert focus["rates"][1]["score_label"] == "Excellent"

    def test_unrecognised_payment_plan_is_flagged(self, importer, repository):
        content = (
            b"CAP Code,Manufacturer Name,Model Name,Derivative,Contract Months,Annual Mileage,"
            b"Monthly Rental,P11D Value,Payment Plan\n"
            b"FOFO10STL5HPTM,Ford,Focus,1.0 EcoBoost ST-Line 5dr,36,10000,299.99,26000,flexi\n"
            b"FOFO10STL5HPTM,Ford,Focus,1.0 EcoBoost ST-Line 5dr,48,10000,279.99,26000,monthly_in_advance\n"
        )
        result = importer.import_file("ald", "BCH", "ald_flexi.csv", content)

        assert result.status == "completed"
        assert result.error_rows == 0
        assert result.low_confidence_plans == 1
        assert len(result.errors) == 1
        assert "unrecognised payment plan (flexi)" in result.errors[0]

        rates = repository.latest_rates(provider="ald")
        assert {(r["term"], r["payment_plan"], r["low_confidence_plan"]) for r in rates} == {
            (36, "flexi", True), (48, "monthly_in_advance", False),
        }
        assert repository.get_import(result.batch_id)["details"]["low_confidence_plans"] == 1

    def test_missing_required_mapping_blocks_import(self, importer, repository):
        content = b"Make,Model,Rental\nFord,Focus,299\n"
        with pytest.raises(ValidationError) as exc:
            importer.import_file("lex", "BCH", "lex.csv", content)
        assert exc.value.problems == ["p11d"]
        assert repository.list_imports() == []

    def test_explicit_override_fills_the_gap(self, importer):
        content = b"Make,Model,Rental,Price New\nFord,Focus,299,26000\n"
        result = importer.import_file("lex", "BCH", "lex.csv", content,
                                      column_overrides={"Price New": "p11d"})
        assert result.status == "completed"
        assert result.total_rates == 1


class TestAnalyze:
    def test_analyze_reports_mapping_and_preview(self, importer, ald_csv):
        report = importer.analyze_file("ald", "ald_rates.csv", ald_csv)
        assert report["duplicate_of"] is None
        assert report["term_convention"] == "sum"
        sheet = report["sheets"][0]
        assert sheet["format"] == "tabular"
        assert sheet["missing_required"] == []
        assert sheet["rate_count"] == 3
        assert sheet["error_count"] == 1
        assert sheet["preview"][0]["cap_code"] == "FOFO10STL5HPTM"

    def test_analyze_flags_duplicates_and_missing_fields(self, importer, ald_csv):
        batch_id = importer.import_file("ald", "BCH", "ald_rates.csv", ald_csv).batch_id
        assert importer.analyze_file("ald", "ald_rates.csv", ald_csv)["duplicate_of"] == batch_id

        report = importer.analyze_file("lex", "lex.csv", b"Make,Model,Rental\nFord,Focus,299\n")
        assert report["sheets"][0]["missing_required"] == ["p11d"]
        assert "rate_count" not in report["sheets"][0]


class TestUnexpectedFailure:
    def test_crash_during_processing_fails_the_batch(self, importer, repository, venus_workbook, monkeypatch):
        def crash(*args, **kwargs):
            raise RuntimeError("catalog unavailable")

        monkeypatch.setattr(importer.batch_manager, "process_rows", crash)
        with pytest.raises(RuntimeError):
            importer.import_file("venus", "BCH", "venus_march.xlsx", venus_workbook)

        [batch] = repository.list_imports(provider="venus")
        assert batch["status"] == "failed"
        assert batch["is_latest"] is False
        assert batch["completed_at"] is not None
        assert batch["details"]["aborted"] == "RuntimeError: catalog unavailable"
