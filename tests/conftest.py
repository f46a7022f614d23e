from datetime import datetime
from io import BytesIO
from typing import Dict, List, Sequence

import pytest
from openpyxl import Workbook
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from ratebook_ingest.config.settings import reset_settings
from ratebook_ingest.db.models import Vehicle
from ratebook_ingest.db.session import get_db_session, init_db, make_session_factory
from ratebook_ingest.parsing.models import RateRow

CATALOG = [
    {"cap_code": "VWGO20GTI5HPIA", "manufacturer": "Volkswagen", "model": "Golf",
     "variant": "2.0 TSI GTI 5dr DSG", "p11d": 3800000, "fuel_type": "Petrol"},
    {"cap_code": "VWGO15LIF5HPM", "manufacturer": "Volkswagen", "model": "Golf",
     "variant": "1.5 TSI Life 5dr", "p11d": 2800000, "fuel_type": "Petrol"},
    {"cap_code": "FOFO10STL5HPTM", "manufacturer": "Ford", "model": "Focus",
     "variant": "1.0 EcoBoost ST-Line 5dr", "p11d": 2600000, "fuel_type": "Petrol"},
    {"cap_code": "FOPU10TIT5HPTM", "manufacturer": "Ford", "model": "Puma",
     "variant": "1.0 EcoBoost Titanium 5dr", "p11d": 2500000, "fuel_type": "Petrol"},
]


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch):
    """Every test starts from default settings."""
    monkeypatch.delenv("CLASSIFIER_URL", raising=False)
    monkeypatch.delenv("CHUNK_SIZE", raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def catalog_vehicles(session_factory) -> Dict[str, int]:
    """Seed the canonical catalog; returns CAP code -> vehicle id."""
    with get_db_session(session_factory) as session:
        vehicles = [Vehicle(created_at=datetime.utcnow(), **data) for data in CATALOG]
        session.add_all(vehicles)
        session.flush()
        return {v.cap_code: v.id for v in vehicles}


def make_rate(**overrides) -> RateRow:
    data = dict(
        manufacturer="Volkswagen",
        model="Golf",
        variant="2.0 TSI GTI 5dr DSG",
        term=36,
        annual_mileage=10000,
        payment_plan_code="1+35",
        initial_months=1,
        total_rental=35000,
        source_sheet="Volkswagen",
        source_row_index=3,
    )
    data.update(overrides)
    return RateRow(**data)


def workbook_bytes(sheets: Dict[str, Sequence[Sequence]]) -> bytes:
    """Build an xlsx in memory: sheet name -> rows."""
    wb = Workbook()
    wb.remove(wb.active)
    for name, rows in sheets.items():
        ws = wb.create_sheet(title=name)
        for row in rows:
            ws.append(list(row))
    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def venus_ford_rows() -> List[List]:
    """Three vehicles, two mileage bands each, three term columns."""
    return [
        ["Venus Fleet - Ford Business Contract Hire"],
        [],
        ["Term", "1+23", "1+35", "1+47"],
        ["Focus ST-Line 1.0 EcoBoost 5dr", "10k", 299, 319, 339],
        [None, "15k", 329, 349, 369],
        ["Puma Titanium 1.0 EcoBoost 5dr", "10k", 279, 289, 309],
        [None, "15k", 299, 309, 329],
        ["Kuga ST-Line X 2.5 PHEV Auto", "10k -NM", 449, 469, 489],
        [None, "15k -NM", 479, 499, 519],
        ["All rentals are exclusive of VAT"],
    ]


@pytest.fixture
def venus_workbook() -> bytes:
    return workbook_bytes({
        "Ford_": venus_ford_rows(),
        "Bulletins": [["Price changes this month"], ["Puma prices up 2%"]],
    })


@pytest.fixture
def ald_csv() -> bytes:
    lines = [
        "CAP Code,Manufacturer Name,Model Name,Derivative,Contract Months,Annual Mileage,Monthly Rental,P11D Value",
        "FOFO10STL5HPTM,Ford,Focus,1.0 EcoBoost ST-Line 5dr,36,10000,299.99,26000",
        "FOFO10STL5HPTM,Ford,Focus,1.0 EcoBoost ST-Line 5dr,48,10000,279.99,26000",
        "KIAEV6GTL5EVA,Kia,EV6,GT-Line 77kWh 5dr Auto,36,10000,499.00,47000",
        "FOPU10TIT5HPTM,Ford,Puma,1.0 EcoBoost Titanium 5dr,36,10000,POA,25000",
    ]
    return ("\n".join(lines) + "\n").encode("utf-8")
