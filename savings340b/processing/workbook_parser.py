# savings340b/processing/workbook_parser.py
"""
Parses quarterly 340B workbooks (.xlsx or legacy .xls) into typed records.

Four sheets are recognized by exact name. Every field is bound to a fixed
column position; headers are not consulted except for an optional width
warning. Numeric cells never raise: anything that does not start with a
number becomes 0.
"""
import math
import numbers
import re
from dataclasses import dataclass, field
from decimal import Decimal
from io import BytesIO
from typing import Any, Dict, List, Optional

import pandas as pd

from savings340b.utils.logging_config import get_logger, get_correlation_id, PerformanceLogger
from savings340b.utils.error_handler import WorkbookParseError

logger = get_logger('savings340b.processing.workbook_parser')

SHEET_HOSPITAL = "Data - Hospital"
SHEET_HOSPITAL_QUALIFICATIONS = "Data - Hospital Qualifications"
SHEET_RETAIL_QUALIFICATIONS = "Data - Retail Qualifications"
SHEET_RETAIL_PROFIT = "Data - Retail Profit"

# Columns each sheet binds; used only by the header width warning
SHEET_WIDTHS = {
    SHEET_HOSPITAL: 15,
    SHEET_HOSPITAL_QUALIFICATIONS: 9,
    SHEET_RETAIL_QUALIFICATIONS: 9,
    SHEET_RETAIL_PROFIT: 14,
}

QUALIFICATION_FIELDS = (
    'qualified_percent', 'inpatient_percent', 'medicaid_percent', 'orphan_percent',
    'non_340b_drug_percent', 'drug_exclude_percent', 'disqualified_percent',
)

_FLOAT_PREFIX = re.compile(r'^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?')
_INT_PREFIX = re.compile(r'^\s*[+-]?\d+')


def to_float(value: Any) -> float:
    """Leading numeric prefix of `value` as a float ("25%" -> 25.0); 0.0 when there is none."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (numbers.Real, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        match = _FLOAT_PREFIX.match(value)
        if not match:
            return 0.0
        number = float(match.group(0))
    else:
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def to_int(value: Any) -> int:
    """Leading integer prefix of `value` ("12.7" -> 12); 0 when there is none."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (numbers.Real, Decimal)):
        number = float(value)
        if math.isnan(number) or math.isinf(number):
            return 0
        return math.trunc(number)
    if isinstance(value, str):
        match = _INT_PREFIX.match(value)
        return int(match.group(0)) if match else 0
    return 0


def to_pid(value: Any) -> Optional[str]:
    """PIDs are stored as text. Whole-number floats lose their '.0'."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def to_name(value: Any) -> str:
    """Hospital names as text; a whole-number float cell reads as 123, not 123.0."""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def _cell(row: List[Any], index: int) -> Any:
    return row[index] if index < len(row) else None


def _qualifications(row: List[Any]) -> Dict[str, float]:
    return {name: to_float(_cell(row, 2 + offset)) for offset, name in enumerate(QUALIFICATION_FIELDS)}


@dataclass
class HospitalRecord:
    """One row of "Data - Hospital"."""
    hospital: Any
    pharmacy_pid: Optional[str]
    qualified_percent: float = 0.0
    inpatient_percent: float = 0.0
    medicaid_percent: float = 0.0
    orphan_percent: float = 0.0
    non_340b_drug_percent: float = 0.0
    drug_exclude_percent: float = 0.0
    disqualified_percent: float = 0.0
    savings: float = 0.0
    drug_spend: float = 0.0
    savings_to_spend_percent: float = 0.0
    eligible_percent: float = 0.0
    medicaid_share_percent: float = 0.0
    macro_savings: float = 0.0

    def metrics(self) -> Dict[str, float]:
        return {
            'savings': self.savings,
            'drug_spend': self.drug_spend,
            'savings_to_spend_percent': self.savings_to_spend_percent,
            'eligible_percent': self.eligible_percent,
            'medicaid_percent': self.medicaid_share_percent,
            'macro_savings': self.macro_savings,
        }


@dataclass
class QualificationRecord:
    """One row of either qualification sheet. `pid` is the hospital PID or the pharmacy PID."""
    hospital: Any
    pid: Optional[str]
    qualified_percent: float = 0.0
    inpatient_percent: float = 0.0
    medicaid_percent: float = 0.0
    orphan_percent: float = 0.0
    non_340b_drug_percent: float = 0.0
    drug_exclude_percent: float = 0.0
    disqualified_percent: float = 0.0

    def percentages(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in QUALIFICATION_FIELDS}


@dataclass
class PharmacyProfitRecord:
    """One row of "Data - Retail Profit"."""
    hospital: Any
    pharmacy_pid: Optional[str]
    scripts: int = 0
    dispensing_fee: float = 0.0
    ce_revenue: float = 0.0
    drug_cost: float = 0.0
    current_profit: float = 0.0
    current_profit_median: float = 0.0
    brand_profit: float = 0.0
    brand_profit_avg: float = 0.0
    generic_profit: float = 0.0
    generic_profit_avg: float = 0.0
    ep_added_340b_benefit: float = 0.0
    ep_340b_bucket_split: float = 0.0

    def metrics(self) -> Dict[str, Any]:
        return {
            'scripts': self.scripts,
            'dispensing_fee': self.dispensing_fee,
            'ce_revenue': self.ce_revenue,
            'drug_cost': self.drug_cost,
            'current_profit': self.current_profit,
            'current_profit_median': self.current_profit_median,
            'brand_profit': self.brand_profit,
            'brand_profit_avg': self.brand_profit_avg,
            'generic_profit': self.generic_profit,
            'generic_profit_avg': self.generic_profit_avg,
            'ep_added_340b_benefit': self.ep_added_340b_benefit,
            'ep_340b_bucket_split': self.ep_340b_bucket_split,
        }


@dataclass
class ParsedWorkbook:
    hospital_data: List[HospitalRecord] = field(default_factory=list)
    hospital_qualifications: List[QualificationRecord] = field(default_factory=list)
    pharmacy_qualifications: List[QualificationRecord] = field(default_factory=list)
    pharmacy_profit_data: List[PharmacyProfitRecord] = field(default_factory=list)

    @property
    def total_records(self) -> int:
        return (len(self.hospital_data) + len(self.hospital_qualifications)
                + len(self.pharmacy_qualifications) + len(self.pharmacy_profit_data))


def _map_hospital_row(row: List[Any]) -> HospitalRecord:
    return HospitalRecord(
        hospital=row[0],
        pharmacy_pid=to_pid(_cell(row, 1)),
        **_qualifications(row),
        savings=to_float(_cell(row, 9)),
        drug_spend=to_float(_cell(row, 10)),
        savings_to_spend_percent=to_float(_cell(row, 11)),
        eligible_percent=to_float(_cell(row, 12)),
        medicaid_share_percent=to_float(_cell(row, 13)),
        macro_savings=to_float(_cell(row, 14)),
    )


def _map_qualification_row(row: List[Any]) -> QualificationRecord:
    return QualificationRecord(hospital=row[0], pid=to_pid(_cell(row, 1)), **_qualifications(row))


def _map_profit_row(row: List[Any]) -> PharmacyProfitRecord:
    return PharmacyProfitRecord(
        hospital=row[0],
        pharmacy_pid=to_pid(_cell(row, 1)),
        scripts=to_int(_cell(row, 2)),
        dispensing_fee=to_float(_cell(row, 3)),
        ce_revenue=to_float(_cell(row, 4)),
        drug_cost=to_float(_cell(row, 5)),
        current_profit=to_float(_cell(row, 6)),
        current_profit_median=to_float(_cell(row, 7)),
        brand_profit=to_float(_cell(row, 8)),
        brand_profit_avg=to_float(_cell(row, 9)),
        generic_profit=to_float(_cell(row, 10)),
        generic_profit_avg=to_float(_cell(row, 11)),
        ep_added_340b_benefit=to_float(_cell(row, 12)),
        ep_340b_bucket_split=to_float(_cell(row, 13)),
    )


_ROW_MAPPERS = {
    SHEET_HOSPITAL: ('hospital_data', _map_hospital_row),
    SHEET_HOSPITAL_QUALIFICATIONS: ('hospital_qualifications', _map_qualification_row),
    SHEET_RETAIL_QUALIFICATIONS: ('pharmacy_qualifications', _map_qualification_row),
    SHEET_RETAIL_PROFIT: ('pharmacy_profit_data', _map_profit_row),
}


def check_header_width(sheet_name: str, rows: List[List[Any]]) -> bool:
    """Warns when a sheet's header row is narrower than the columns bound to it. Never alters mapping."""
    expected = SHEET_WIDTHS.get(sheet_name)
    if expected is None or not rows:
        return True
    header = list(rows[0] or [])
    while header and header[-1] in (None, ""):
        header.pop()
    if len(header) < expected:
        logger.warning(
            f"[{get_correlation_id()}] Sheet '{sheet_name}' header has {len(header)} columns, "
            f"{expected} expected; missing columns will read as 0.",
            extra={'sheet': sheet_name}
        )
        return False
    return True


def map_sheets(sheets: Dict[str, List[List[Any]]], header_guard: bool = True) -> ParsedWorkbook:
    """
    Turns raw sheet rows into the four record collections.
    Row 0 of each sheet is the header. A data row becomes a record only when
    its first cell is truthy. Unrecognized sheets are ignored.
    """
    parsed = ParsedWorkbook()
    for sheet_name, (attr, mapper) in _ROW_MAPPERS.items():
        rows = sheets.get(sheet_name)
        if not rows:
            continue
        if header_guard:
            check_header_width(sheet_name, rows)
        target = getattr(parsed, attr)
        for row in rows[1:]:
            row = list(row or [])
            if row and row[0]:
                target.append(mapper(row))
        logger.debug(f"[{get_correlation_id()}] Sheet '{sheet_name}': {len(target)} records.")
    return parsed


def _frame_rows(frame: pd.DataFrame) -> List[List[Any]]:
    """Sheet frame as row lists; empty cells become None."""
    return frame.astype(object).where(frame.notna(), None).values.tolist()


def read_workbook(content: bytes, filename: str = None) -> Dict[str, List[List[Any]]]:
    """
    Opens the workbook container and returns {sheet name: rows of raw cell values}.
    pandas picks the engine from the bytes: openpyxl for .xlsx, xlrd for legacy .xls.
    """
    try:
        frames = pd.read_excel(BytesIO(content), sheet_name=None, header=None)
    except Exception as e:
        logger.error(f"[{get_correlation_id()}] Could not open workbook '{filename}': {e}")
        raise WorkbookParseError(f"Unable to open workbook: {e}", filename=filename)
    return {sheet_name: _frame_rows(frame) for sheet_name, frame in frames.items()}


def parse_workbook(content: bytes, filename: str = None, header_guard: bool = True) -> ParsedWorkbook:
    with PerformanceLogger("parse_workbook", filename=filename, size_bytes=len(content or b"")):
        sheets = read_workbook(content, filename)
        parsed = map_sheets(sheets, header_guard=header_guard)
    logger.info(
        f"[{get_correlation_id()}] Parsed '{filename}': {len(parsed.hospital_data)} hospital, "
        f"{len(parsed.hospital_qualifications)} hospital qualification, "
        f"{len(parsed.pharmacy_qualifications)} retail qualification, "
        f"{len(parsed.pharmacy_profit_data)} retail profit records."
    )
    return parsed


if __name__ == '__main__':
    import sys
    from savings340b.utils.logging_config import setup_logging
    setup_logging()

    if len(sys.argv) < 2:
        print("usage: python -m savings340b.processing.workbook_parser <workbook.xlsx>")
        sys.exit(1)
    with open(sys.argv[1], 'rb') as fh:
        result = parse_workbook(fh.read(), sys.argv[1])
    print(f"Total records: {result.total_records}")
