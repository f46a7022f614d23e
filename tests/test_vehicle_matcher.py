from ratebook_ingest.matching.catalog import SqlCatalog, VehicleFilter
from ratebook_ingest.matching.vehicle_matcher import (
    EXACT, MODEL_ONLY, NONE, VehicleMatcher, source_key,
)


class TestSqlCatalog:
    def test_lookup_filters(self, session_factory, catalog_vehicles):
        catalog = SqlCatalog(session_factory)
        golfs = catalog.lookup_vehicles(VehicleFilter(manufacturer="volkswagen", model="golf"))
        assert [v.cap_code for v in golfs] == ["VWGO15LIF5HPM", "VWGO20GTI5HPIA"]
        gti = catalog.lookup_vehicles(VehicleFilter(manufacturer="Volkswagen", model="Golf", variant_prefix="2.0 TSI"))
        assert [v.cap_code for v in gti] == ["VWGO20GTI5HPIA"]

    def test_lookup_by_cap_codes(self, session_factory, catalog_vehicles):
        catalog = SqlCatalog(session_factory)
        found = catalog.lookup_by_cap_codes(["FOFO10STL5HPTM", "NOPE", None])
        assert list(found) == ["FOFO10STL5HPTM"]
        assert found["FOFO10STL5HPTM"].id == catalog_vehicles["FOFO10STL5HPTM"]
        assert catalog.lookup_vehicle_by_cap_code("NOPE") is None

    def test_create_vehicle_is_idempotent(self, session_factory, catalog_vehicles):
        catalog = SqlCatalog(session_factory)
        created = catalog.create_vehicle("KIAEV6GTL5EVA", "Kia", "EV6", "GT-Line 77kWh", p11d=4700000)
        again = catalog.create_vehicle("KIAEV6GTL5EVA", "Kia", "EV6")
        assert created.id == again.id
        assert again.p11d == 4700000


class TestVehicleMatcher:
    def setup_method(self):
        self.descriptor = ("Volkswagen", "Golf", "2.0 TSI GTI 5dr DSG")

    def test_exact_match(self, session_factory, catalog_vehicles):
        matcher = VehicleMatcher(SqlCatalog(session_factory))
        result = matcher.find_match(*self.descriptor)
        assert result.method == EXACT
        assert result.cap_code == "VWGO20GTI5HPIA"
        assert result.confidence == 100
        assert result.candidates_evaluated == 1

    def test_model_only_fallback(self, session_factory, catalog_vehicles):
        matcher = VehicleMatcher(SqlCatalog(session_factory))
        result = matcher.find_match("Volkswagen", "Golf", "R 2.0 TSI 4Motion")
        assert result.method == MODEL_ONLY
        assert 60 <= result.confidence <= 75
        assert result.cap_code in ("VWGO20GTI5HPIA", "VWGO15LIF5HPM")
        assert result.candidates_evaluated == 2

    def test_missing_manufacturer_is_no_match(self, session_factory, catalog_vehicles):
        result = VehicleMatcher(SqlCatalog(session_factory)).find_match(None, "Golf", "GTI")
        assert result.method == NONE
        assert result.confidence == 0
        assert not result.matched

    def test_list_price_far_off_rejects_candidates(self, session_factory, catalog_vehicles):
        matcher = VehicleMatcher(SqlCatalog(session_factory))
        result = matcher.find_match(*self.descriptor, list_price=1000000)
        assert result.method == NONE
        assert result.candidates_evaluated == 3

    def test_list_price_close_keeps_match(self, session_factory, catalog_vehicles):
        matcher = VehicleMatcher(SqlCatalog(session_factory))
        result = matcher.find_match(*self.descriptor, list_price=3795000)
        assert result.cap_code == "VWGO20GTI5HPIA"

    def test_model_without_variant(self, session_factory, catalog_vehicles):
        result = VehicleMatcher(SqlCatalog(session_factory)).find_match("Ford", "Focus")
        assert result.method == EXACT
        assert result.cap_code == "FOFO10STL5HPTM"
        assert 90 <= result.confidence <= 100


class TestSourceKey:
    def test_normalized_descriptor(self):
        assert source_key("venus", "Ford", "Focus", "ST-Line") == source_key("VENUS", "ford", "FOCUS", "st line")
        assert source_key("venus", "Ford", "Focus", None) == source_key("venus", "Ford", "Focus", "")
        assert source_key("venus", "Ford", "Focus", None) != source_key("ald", "Ford", "Focus", None)
