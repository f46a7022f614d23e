from .format_detector import FormatDetector, SheetDetection, TABULAR, MATRIX, UNKNOWN, SKIPPED

__all__ = ["FormatDetector", "SheetDetection", "TABULAR", "MATRIX", "UNKNOWN", "SKIPPED"]
