from .models import RateRow, ParseOutcome
from .workbook import Sheet, read_workbook, read_csv, read_excel
from .matrix_decoder import MatrixDecoder, RowKind, decode_matrix_sheet, split_vehicle_name
from .profile_grid import GridLayout, ProfileGridDecoder, detect_profile_grid, extract_vehicle
from .tabular import TabularParser

__all__ = [
    "RateRow",
    "ParseOutcome",
    "Sheet",
    "read_workbook",
    "read_csv",
    "read_excel",
    "MatrixDecoder",
    "RowKind",
    "decode_matrix_sheet",
    "split_vehicle_name",
    "GridLayout",
    "ProfileGridDecoder",
    "detect_profile_grid",
    "extract_vehicle",
    "TabularParser",
]
