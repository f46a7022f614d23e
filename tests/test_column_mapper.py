import pytest

from ratebook_ingest.exceptions import ValidationError
from ratebook_ingest.mapping.classifier import ClassifierSuggestion
from ratebook_ingest.mapping.column_mapper import ColumnMapper, OverrideLayer
from ratebook_ingest.mapping.store import ProviderMappingStore
from ratebook_ingest.profiles.dsl import DEFAULT_REQUIRED_FIELDS

HEADERS = ["Manufacturer", "Model", "Derivative", "Term", "Mileage", "Monthly Rental", "P11D"]


class TestColumnMapper:
    def setup_method(self):
        self.mapper = ColumnMapper()

    def test_exact_headers(self):
        result = self.mapper.map_headers(HEADERS)
        assert result.mappings == {
            "Manufacturer": "manufacturer",
            "Model": "model",
            "Derivative": "variant",
            "Term": "term",
            "Mileage": "annual_mileage",
            "Monthly Rental": "monthly_rental",
            "P11D": "p11d",
        }
        assert all(m.confidence == 100 for m in result.matches)
        assert result.missing_required(DEFAULT_REQUIRED_FIELDS) == []

    def test_longer_pattern_wins(self):
        candidates = self.mapper.score_header("Basic List Price")
        assert candidates[0][0] == "basic_list_price"

    def test_partial_match_scores_below_exact(self):
        result = self.mapper.map_headers(["Vehicle Manufacturer"])
        match = result.matches[0]
        assert match.field == "manufacturer"
        assert 60 <= match.confidence < 100
        assert match.source == "pattern"

    def test_each_field_used_once(self):
        result = self.mapper.map_headers(["Rental Amount", "Monthly Rental"])
        assert result.field_columns == {"monthly_rental": 1}
        assert result.unmapped_headers == ["Rental Amount"]

    def test_numeric_field_with_text_samples_is_penalised(self):
        samples = [["Ford", "Kuga"], ["Kia", "Niro"]]
        result = self.mapper.map_headers(["Make", "Rental Amount"], sample_rows=samples)
        assert result.field_columns == {"manufacturer": 0}

    def test_missing_required_fields(self):
        result = self.mapper.map_headers(["Manufacturer", "Model", "Monthly Rental"])
        assert result.missing_required(DEFAULT_REQUIRED_FIELDS) == ["p11d"]
        with pytest.raises(ValidationError) as exc:
            self.mapper.validate(result, DEFAULT_REQUIRED_FIELDS)
        assert exc.value.problems == ["p11d"]

    def test_otr_stands_in_for_p11d(self):
        result = self.mapper.map_headers(["Manufacturer", "Model", "Monthly Rental", "OTR Price"])
        assert result.missing_required(DEFAULT_REQUIRED_FIELDS) == []

    def test_explicit_layer_beats_heuristic(self):
        layer = OverrideLayer(source="explicit", mappings={"Vehicle": "model", "Rental": "ignore"})
        result = self.mapper.map_headers(["Vehicle", "Rental"], layers=[layer])
        assert result.matches[0].field == "model"
        assert result.matches[0].source == "explicit"
        assert result.matches[1].field is None

    def test_layer_with_unknown_field_is_rejected(self):
        layer = OverrideLayer(source="explicit", mappings={"Vehicle": "colour"})
        with pytest.raises(ValidationError):
            self.mapper.map_headers(["Vehicle"], layers=[layer])

    def test_header_match_count(self):
        assert self.mapper.count_header_matches(["Manufacturer", "Model", "Term", "Mileage", "Rental"]) == 5
        assert self.mapper.count_header_matches(["Term", "1+23", "1+35", "3+33"]) == 1


class TestClassifierSuggestion:
    def test_low_confidence_and_unknown_fields_dropped(self):
        suggestion = ClassifierSuggestion(
            mappings={"Veh": "model", "Cost pm": "monthly_rental", "Paint": "colour"},
            confidences={"Veh": 55, "Cost pm": 88, "Paint": 99},
        )
        layer = suggestion.as_layer(min_confidence=70)
        assert layer.mappings == {"Cost pm": "monthly_rental"}
        assert layer.lookup("cost pm") == ("monthly_rental", 88)


class TestProviderMappingStore:
    def test_save_get_bumps_version(self, session_factory):
        store = ProviderMappingStore(session_factory)
        first = store.save("ALD", {"Monthly Rental": "monthly_rental"}, file_format="xlsx", user="ops")
        assert first["version"] == 1
        second = store.save("ald", {"Monthly Rental": "monthly_rental", "Make": "manufacturer"})
        assert second["version"] == 2
        assert second["file_format"] == "xlsx"
        assert store.get("Ald")["column_mappings"]["Make"] == "manufacturer"

    def test_layer_and_delete(self, session_factory):
        store = ProviderMappingStore(session_factory)
        assert store.layer("lex") is None
        store.save("lex", {"Cost": "monthly_rental"})
        layer = store.layer("lex")
        assert layer.source == "stored"
        assert store.delete("lex")
        assert not store.delete("lex")
        assert store.get("lex") is None

    def test_unknown_field_rejected(self, session_factory):
        store = ProviderMappingStore(session_factory)
        with pytest.raises(ValidationError):
            store.save("lex", {"Colour": "paint_colour"})
