"""
Ratebook Importer

End-to-end import of one uploaded rate sheet:

    1. duplicate check on the content hash (pre-flight)
    2. read workbook, detect the layout of every sheet
    3. map tabular headers and validate required fields (pre-flight)
    4. start the batch, parse and normalize every sheet
    5. match, score and persist rows in chunks, then finalize
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.orm import sessionmaker

from ..config.settings import Settings, get_settings
from ..detection.format_detector import MATRIX, TABULAR, FormatDetector, SheetDetection
from ..exceptions import DuplicateFileError, ImportAborted, ValidationError
from ..mapping.classifier import ColumnClassifier, get_classifier
from ..mapping.column_mapper import ColumnMapper, MappingResult, OverrideLayer
from ..mapping.store import ProviderMappingStore
from ..normalize.text import normalize_manufacturer
from ..parsing.matrix_decoder import MatrixDecoder
from ..parsing.models import ParseOutcome, RateRow
from ..parsing.profile_grid import ProfileGridDecoder, detect_profile_grid, extract_vehicle
from ..parsing.tabular import TabularParser
from ..parsing.workbook import Sheet, read_workbook
from ..profiles.dsl import ProviderProfile
from ..profiles.loader import load_profile
from ..utils.logging import import_logger
from .batch_manager import ImportBatchManager, hash_content

logger = structlog.get_logger()

SAMPLE_ROWS = 5
PREVIEW_RATES = 10


@dataclass
class ImportResult:
    batch_id: Optional[str]
    status: str
    total_rates: int = 0
    total_rows: int = 0
    success_rows: int = 0
    error_rows: int = 0
    unique_cap_codes: int = 0
    low_confidence_plans: int = 0
    sheets_processed: List[str] = field(default_factory=list)
    sheets_skipped: List[Dict[str, str]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "total_rates": self.total_rates,
            "total_rows": self.total_rows,
            "success_rows": self.success_rows,
            "error_rows": self.error_rows,
            "unique_cap_codes": self.unique_cap_codes,
            "low_confidence_plans": self.low_confidence_plans,
            "sheets_processed": self.sheets_processed,
            "sheets_skipped": self.sheets_skipped,
            "errors": self.errors,
        }


@dataclass
class SheetPlan:
    """How one parseable sheet will be decoded."""
    sheet: Sheet
    detection: SheetDetection
    mapping: Optional[MappingResult] = None


class RatebookImporter:
    def __init__(self,
                 session_factory: Optional[sessionmaker] = None,
                 settings: Optional[Settings] = None,
                 batch_manager: Optional[ImportBatchManager] = None,
                 mapping_store: Optional[ProviderMappingStore] = None,
                 classifier: Optional[ColumnClassifier] = None,
                 mapper: Optional[ColumnMapper] = None):
        self.settings = settings or get_settings()
        self.batch_manager = batch_manager or ImportBatchManager(session_factory, settings=self.settings)
        self.mapping_store = mapping_store or ProviderMappingStore(session_factory)
        self.classifier = classifier if classifier is not None else get_classifier()
        self.mapper = mapper or ColumnMapper()

    # --- planning ---

    def _layers(self, profile: ProviderProfile, headers: Sequence[Any],
                samples: Sequence[Sequence[Any]],
                column_overrides: Optional[Dict[str, str]]) -> List[OverrideLayer]:
        """Override layers in precedence order."""
        layers = []
        if column_overrides:
            layers.append(OverrideLayer(source="explicit", mappings=dict(column_overrides)))
        stored = self.mapping_store.layer(profile.provider_code)
        if stored is not None:
            layers.append(stored)
        if profile.column_mappings:
            layers.append(OverrideLayer(source="profile", mappings=dict(profile.column_mappings)))
        if self.classifier is not None and stored is None:
            suggestion = self.classifier.suggest([h for h in headers if h is not None], samples)
            if suggestion is not None:
                layers.append(suggestion.as_layer(self.settings.classifier_min_confidence))
        return layers

    def map_sheet(self, sheet: Sheet, header_row_index: int, profile: ProviderProfile,
                  column_overrides: Optional[Dict[str, str]] = None) -> MappingResult:
        headers = sheet.rows[header_row_index]
        samples = [r for r in sheet.rows[header_row_index + 1:] if any(c is not None for c in r)][:SAMPLE_ROWS]
        layers = self._layers(profile, headers, samples, column_overrides)
        return self.mapper.map_headers(headers, sample_rows=samples, layers=layers)

    def plan(self, sheets: Sequence[Sheet], profile: ProviderProfile,
             column_overrides: Optional[Dict[str, str]] = None,
             validate: bool = True) -> Tuple[List[SheetPlan], List[Dict[str, str]]]:
        """Detect and map every sheet; raises ValidationError on a missing required mapping."""
        detections = FormatDetector(profile, self.mapper).detect_workbook(sheets)
        plans: List[SheetPlan] = []
        skipped: List[Dict[str, str]] = []
        for sheet, detection in zip(sheets, detections):
            if not detection.is_parseable:
                skipped.append({"sheet": sheet.name, "reason": detection.reason})
                continue
            plan = SheetPlan(sheet=sheet, detection=detection)
            if detection.format == TABULAR:
                plan.mapping = self.map_sheet(sheet, detection.header_row_index, profile, column_overrides)
                if validate:
                    missing = plan.mapping.missing_required(profile.required_fields)
                    if missing:
                        raise ValidationError(
                            f"Sheet '{sheet.name}': missing required column mappings: {', '.join(missing)}",
                            missing,
                        )
            plans.append(plan)
        return plans, skipped

    # --- parsing ---

    def parse_sheet(self, plan: SheetPlan, profile: ProviderProfile) -> ParseOutcome:
        sheet, detection = plan.sheet, plan.detection
        if detection.format == TABULAR:
            parser = TabularParser(profile, plan.mapping, sheet.name, detection.header_row_index)
            return parser.parse(sheet.rows)

        if detection.metadata.get("layout") == "profile_grid":
            layout = detect_profile_grid(sheet.rows)
            vehicle = extract_vehicle(sheet.rows, sheet.name, profile.manufacturer_aliases)
            return ProfileGridDecoder(layout, vehicle, profile, sheet.name).decode(sheet.rows)

        manufacturer = normalize_manufacturer(sheet.name, profile.manufacturer_aliases)
        return MatrixDecoder(manufacturer, profile=profile, sheet_name=sheet.name).decode(sheet.rows)

    def parse_plans(self, plans: Sequence[SheetPlan], profile: ProviderProfile) -> ParseOutcome:
        combined = ParseOutcome(sheet="*")
        for plan in plans:
            combined.extend(self.parse_sheet(plan, profile))
        return combined

    # --- public operations ---

    def import_file(self,
                    provider_code: str,
                    contract_type: Optional[str],
                    file_name: str,
                    content: bytes,
                    column_overrides: Optional[Dict[str, str]] = None,
                    force_reimport: bool = False,
                    dry_run: bool = False,
                    cancel_event: Optional[threading.Event] = None) -> ImportResult:
        """Import one file. Pre-flight errors (duplicate, missing mapping) propagate;
        row and chunk errors end up in the batch instead. Anything unexpected
        after the batch starts fails the batch before propagating."""
        profile = load_profile(provider_code)
        provider_code = profile.provider_code
        contract_type = (contract_type or profile.default_contract_type).upper()

        if not force_reimport and not dry_run:
            prior = self.batch_manager.check_duplicate(provider_code, hash_content(content))
            if prior is not None:
                raise DuplicateFileError(prior["batch_id"], prior["created_at"], prior["file_hash"])

        sheets = read_workbook(content, file_name)
        plans, skipped = self.plan(sheets, profile, column_overrides)
        processed = [p.sheet.name for p in plans]
        import_logger.log_sheets(file_name, processed, [s["sheet"] for s in skipped])

        parsed = self.parse_plans(plans, profile)

        if dry_run:
            return ImportResult(
                batch_id=None,
                status="dry_run",
                total_rates=len(parsed.rates),
                total_rows=len(parsed.rates) + len(parsed.errors),
                error_rows=len(parsed.errors),
                low_confidence_plans=sum(1 for r in parsed.rates if r.low_confidence_plan),
                sheets_processed=processed,
                sheets_skipped=skipped,
                errors=[str(e) for e in parsed.errors][:self.settings.error_sample_limit],
            )

        batch_id = self.batch_manager.start_import(
            provider_code, contract_type, file_name, content,
            force=force_reimport,
            details={"sheets_processed": processed, "sheets_skipped": skipped,
                     "total_rates": len(parsed.rates)},
        )
        import_logger.log_import_start(batch_id, provider_code, contract_type, file_name, len(parsed.rates))

        try:
            self.batch_manager.record_parse_errors(batch_id, parsed.errors)
            self.batch_manager.process_rows(batch_id, parsed.rates, profile=profile, cancel_event=cancel_event)
        except ImportAborted as e:
            logger.warning("Import stopped before all chunks were written", batch_id=batch_id, reason=str(e))
        except Exception as e:
            logger.error("Import crashed, failing batch", batch_id=batch_id, error=str(e))
            self.batch_manager.abort(batch_id, f"{type(e).__name__}: {e}")
            raise
        batch = self.batch_manager.finalize(batch_id)

        return ImportResult(
            batch_id=batch_id,
            status=batch["status"],
            total_rates=len(parsed.rates),
            total_rows=batch["total_rows"],
            success_rows=batch["success_rows"],
            error_rows=batch["error_rows"],
            unique_cap_codes=batch["unique_cap_codes"],
            low_confidence_plans=batch["details"].get("low_confidence_plans", 0),
            sheets_processed=processed,
            sheets_skipped=skipped,
            errors=batch["error_log"][:self.settings.error_sample_limit],
        )

    def analyze_file(self,
                     provider_code: str,
                     file_name: str,
                     content: bytes,
                     column_overrides: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Detection, mapping suggestions and a parsed preview, without writing anything."""
        profile = load_profile(provider_code)
        sheets = read_workbook(content, file_name)
        plans, skipped = self.plan(sheets, profile, column_overrides, validate=False)

        analysed = []
        for plan in plans:
            entry: Dict[str, Any] = plan.detection.to_dict()
            if plan.mapping is not None:
                entry["mapping"] = [
                    {"header": m.header, "field": m.field, "confidence": m.confidence, "source": m.source}
                    for m in plan.mapping.matches if m.header
                ]
                entry["missing_required"] = plan.mapping.missing_required(profile.required_fields)
                entry["mapping_confidence"] = plan.mapping.confidence
            if plan.mapping is None or not entry["missing_required"]:
                outcome = self.parse_sheet(plan, profile)
                entry["rate_count"] = len(outcome.rates)
                entry["error_count"] = len(outcome.errors)
                entry["preview"] = [_preview(r) for r in outcome.rates[:PREVIEW_RATES]]
                entry["errors"] = [str(e) for e in outcome.errors][:self.settings.error_sample_limit]
            analysed.append(entry)

        file_hash = hash_content(content)
        duplicate = self.batch_manager.check_duplicate(profile.provider_code, file_hash)
        return {
            "provider_code": profile.provider_code,
            "file_name": file_name,
            "file_hash": file_hash,
            "duplicate_of": duplicate["batch_id"] if duplicate else None,
            "term_convention": profile.term_convention.value,
            "sheets": analysed,
            "sheets_skipped": skipped,
        }


def _preview(rate: RateRow) -> Dict[str, Any]:
    data = rate.to_dict()
    data.pop("raw", None)
    return {k: v for k, v in data.items() if v is not None}
