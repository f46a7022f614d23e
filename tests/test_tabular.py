import pytest

from ratebook_ingest.exceptions import ValidationError
from ratebook_ingest.mapping.column_mapper import ColumnMapper
from ratebook_ingest.parsing.tabular import TabularParser
from ratebook_ingest.parsing.workbook import read_workbook
from ratebook_ingest.profiles.dsl import ProviderProfile
from ratebook_ingest.profiles.loader import load_profile

from .conftest import workbook_bytes

HEADERS = ["Manufacturer", "Model", "Derivative", "Term", "Mileage", "Monthly Rental", "P11D", "CO2"]


def parse(rows, profile=None):
    profile = profile or ProviderProfile(provider_code="lex")
    mapping = ColumnMapper().map_headers(rows[0])
    return TabularParser(profile, mapping, "Rates").parse(rows)


class TestTabularParser:
    def test_rows_become_rates_in_pence(self):
        outcome = parse([
            HEADERS,
            ["Ford", "Focus", "1.0 EcoBoost ST-Line 5dr", 36, "10,000", 299.99, 26000, 119],
            ["Kia", "Niro", "1.6 GDi HEV 2 5dr DCT", "48 months", "8k", "£319.00", "31,500", None],
        ])
        assert not outcome.errors
        focus, niro = outcome.rates
        assert focus.total_rental == 29999
        assert focus.p11d == 2600000
        assert focus.term == 36
        assert focus.annual_mileage == 10000
        assert focus.co2 == 119
        assert focus.raw["Derivative"] == "1.0 EcoBoost ST-Line 5dr"
        assert niro.term == 48
        assert niro.annual_mileage == 8000
        assert niro.total_rental == 31900
        assert niro.p11d == 3150000

    def test_defaults_when_term_and_mileage_missing(self):
        profile = ProviderProfile(provider_code="lex", default_term=24, default_mileage=8000)
        outcome = parse([
            ["Manufacturer", "Model", "Monthly Rental", "P11D"],
            ["Ford", "Puma", 289, 25000],
        ], profile)
        rate = outcome.rates[0]
        assert rate.term == 24
        assert rate.annual_mileage == 8000
        assert rate.payment_plan_code == "monthly_in_advance"

    def test_term_from_payment_plan_column(self):
        profile = ProviderProfile(provider_code="lex", term_convention="sum")
        outcome = parse([
            ["Manufacturer", "Model", "Payment Profile", "Monthly Rental", "P11D"],
            ["Ford", "Puma", "6+35", 289, 25000],
        ], profile)
        rate = outcome.rates[0]
        assert rate.term == 41
        assert rate.initial_months == 6

    def test_bad_rows_are_collected_and_blank_rows_skipped(self):
        outcome = parse([
            HEADERS,
            ["Ford", "Focus", None, 36, 10000, "POA", 26000, None],
            [None, None, None, None, None, None, None, None],
            [None, None, "Some trim", 36, 10000, 250, 26000, None],
            ["Ford", "Kuga", None, 36, 10000, 399, 39000, None],
        ])
        assert len(outcome.rates) == 1
        assert [e.reason for e in outcome.errors] == [
            "unparseable rental 'POA'",
            "missing vehicle identifier",
        ]
        assert outcome.errors[0].row_index == 1

    def test_cap_code_alone_identifies_vehicle(self):
        outcome = parse([
            ["CAP Code", "Monthly Rental", "P11D"],
            ["FOFO10STL5HPTM", 299, 26000],
        ])
        assert outcome.rates[0].cap_code == "FOFO10STL5HPTM"
        assert outcome.rates[0].manufacturer == ""

    def test_manufacturer_aliases_applied(self):
        profile = load_profile("venus")
        outcome = parse([
            ["Manufacturer", "Model", "Monthly Rental", "P11D"],
            ["Ford EVs", "Explorer", 420, 45000],
        ], profile)
        assert outcome.rates[0].manufacturer == "Ford"


class TestWorkbookReader:
    def test_excel_sheets_in_order(self):
        content = workbook_bytes({"Ford_": [["Term", "1+23"]], "Kia": [["Term", "1+35"]]})
        sheets = read_workbook(content, "venus.xlsx")
        assert [s.name for s in sheets] == ["Ford_", "Kia"]
        assert sheets[0].rows[0] == ["Term", "1+23"]

    def test_csv_latin1(self):
        content = "Manufacturer,Model\nCitroën,C4\n".encode("latin-1")
        sheets = read_workbook(content, "rates.csv")
        assert sheets[0].name == "rates"
        assert sheets[0].rows[1] == ["Citroën", "C4"]

    def test_unsupported_extension(self):
        with pytest.raises(ValidationError):
            read_workbook(b"%PDF-1.4", "rates.pdf")

    def test_empty_file(self):
        with pytest.raises(ValidationError):
            read_workbook(b"", "rates.xlsx")
