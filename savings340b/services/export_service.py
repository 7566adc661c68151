# savings340b/services/export_service.py
"""
Builds downloadable exports (hospital data, pharmacy data, quarterly summary)
and renders them as CSV, HTML or XLSX through pandas.
"""
import csv
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
from sqlalchemy.orm import Session

from savings340b.utils.logging_config import get_logger, get_correlation_id
from savings340b.utils.error_handler import BadRequestError, NotFoundError, ExportError, handle_exception
from savings340b.database import portal_handler

logger = get_logger('savings340b.services.export')

EXPORT_TYPES = ('hospital_data', 'pharmacy_data', 'summary_report')

MEDIA_TYPES = {
    'csv': 'text/csv',
    'html': 'text/html',
    'xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
}

QUALIFICATION_COLUMNS = (
    ("Qualified %", 'qualified_percent'),
    ("Inpatient %", 'inpatient_percent'),
    ("Medicaid %", 'medicaid_percent'),
    ("Orphan %", 'orphan_percent'),
    ("Non-340B Drug %", 'non_340b_drug_percent'),
    ("Drug Exclude %", 'drug_exclude_percent'),
    ("Disqualified %", 'disqualified_percent'),
)

PHARMACY_METRIC_COLUMNS = (
    ("Scripts", 'scripts'),
    ("Dispensing Fee", 'dispensing_fee'),
    ("CE Revenue", 'ce_revenue'),
    ("Drug Cost", 'drug_cost'),
    ("Current Profit", 'current_profit'),
    ("Current Profit Median", 'current_profit_median'),
    ("Brand Profit", 'brand_profit'),
    ("Brand Profit Avg", 'brand_profit_avg'),
    ("Generic Profit", 'generic_profit'),
    ("Generic Profit Avg", 'generic_profit_avg'),
    ("EP Added 340B Benefit", 'ep_added_340b_benefit'),
    ("EP 340B Bucket Split", 'ep_340b_bucket_split'),
)


@dataclass
class ExportFile:
    content: bytes
    media_type: str
    filename: str
    row_count: int


def _value(obj: Any, attr: str):
    if obj is None:
        return 0
    return getattr(obj, attr, None) or 0


def _qualification_values(qualification) -> Dict[str, Any]:
    return {label: _value(qualification, attr) for label, attr in QUALIFICATION_COLUMNS}


class ExportService:
    """
    Turns export requests into files. Rows come from portal_handler; this
    class only shapes them into labelled columns and serializes them.
    """

    def __init__(self, config: dict = None):
        self.config = (config or {}).get('export', {})
        self.sheet_name = self.config.get('sheet_name', 'Data')

    def build_rows(self, session: Session, export_type: str, quarter_ids: Sequence[int],
                   hospital_ids: Optional[Sequence[int]] = None,
                   pharmacy_ids: Optional[Sequence[int]] = None) -> List[Dict[str, Any]]:
        if export_type == 'hospital_data':
            return self.hospital_rows(session, quarter_ids, hospital_ids)
        if export_type == 'pharmacy_data':
            return self.pharmacy_rows(session, quarter_ids, pharmacy_ids)
        if export_type == 'summary_report':
            return self.summary_rows(session, quarter_ids)
        raise BadRequestError("Invalid export type", details={'type': export_type, 'allowed': list(EXPORT_TYPES)},
                              component="ExportService")

    def hospital_rows(self, session: Session, quarter_ids, hospital_ids=None) -> List[Dict[str, Any]]:
        rows = []
        for hospital, data, period, qualification in portal_handler.fetch_hospital_export_rows(
                session, quarter_ids, hospital_ids):
            row = {
                "Hospital": hospital.name,
                "PID": hospital.pid,
                "Quarter": period.label,
                "Savings": _value(data, 'savings'),
                "Drug Spend": _value(data, 'drug_spend'),
                "Savings to Spend %": _value(data, 'savings_to_spend_percent'),
                "Eligible %": _value(data, 'eligible_percent'),
                "Medicaid %": _value(data, 'medicaid_percent'),
            }
            # "Medicaid %" already comes from the quarterly metrics
            row.update({label: value for label, value in _qualification_values(qualification).items()
                        if label != "Medicaid %"})
            rows.append(row)
        return rows

    def pharmacy_rows(self, session: Session, quarter_ids, pharmacy_ids=None) -> List[Dict[str, Any]]:
        rows = []
        for pharmacy, hospital, data, period, qualification in portal_handler.fetch_pharmacy_export_rows(
                session, quarter_ids, pharmacy_ids):
            row = {
                "Pharmacy": pharmacy.name,
                "Pharmacy PID": pharmacy.pid,
                "Hospital": hospital.name if hospital else "",
                "Hospital PID": hospital.pid if hospital else "",
                "Quarter": period.label,
            }
            row.update({label: _value(data, attr) for label, attr in PHARMACY_METRIC_COLUMNS})
            row.update(_qualification_values(qualification))
            rows.append(row)
        return rows

    def summary_rows(self, session: Session, quarter_ids) -> List[Dict[str, Any]]:
        """One row per selected period: totals, average savings-to-spend % and the top hospital by savings."""
        summaries: Dict[str, Dict[str, Any]] = {}
        for period, data, hospital in portal_handler.fetch_summary_rows(session, quarter_ids):
            summary = summaries.setdefault(period.label, {
                "Quarter": period.label,
                "Total Hospitals": 0,
                "Total Savings": 0,
                "Total Drug Spend": 0,
                "Avg Savings %": 0,
                "Top Hospital": "",
                "Top Savings": 0,
            })
            if data is None:
                continue
            savings = data.savings or 0
            summary["Total Hospitals"] += 1
            summary["Total Savings"] += savings
            summary["Total Drug Spend"] += data.drug_spend or 0
            summary["Avg Savings %"] += data.savings_to_spend_percent or 0
            if savings > summary["Top Savings"]:
                summary["Top Savings"] = savings
                summary["Top Hospital"] = hospital.name if hospital else ""

        for summary in summaries.values():
            if summary["Total Hospitals"]:
                summary["Avg Savings %"] = summary["Avg Savings %"] / summary["Total Hospitals"]
        return list(summaries.values())

    def render(self, rows: List[Dict[str, Any]], export_type: str, fmt: Optional[str]) -> ExportFile:
        """csv and html by name; every other format value yields an xlsx workbook."""
        frame = pd.DataFrame(rows)
        base_name = f"{export_type}_export"
        if fmt == 'csv':
            content = frame.to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\n").encode('utf-8')
            return ExportFile(content, MEDIA_TYPES['csv'], f"{base_name}.csv", len(rows))
        if fmt == 'html':
            content = frame.to_html(index=False, border=1, classes="export-table").encode('utf-8')
            return ExportFile(content, MEDIA_TYPES['html'], f"{base_name}.html", len(rows))

        buffer = BytesIO()
        with pd.ExcelWriter(buffer, engine='openpyxl') as writer:
            frame.to_excel(writer, sheet_name=self.sheet_name, index=False)
        return ExportFile(buffer.getvalue(), MEDIA_TYPES['xlsx'], f"{base_name}.xlsx", len(rows))

    def export(self, session: Session, export_type: str, quarter_ids: Sequence[int],
               hospital_ids: Optional[Sequence[int]] = None, pharmacy_ids: Optional[Sequence[int]] = None,
               fmt: Optional[str] = None) -> ExportFile:
        if not export_type or not quarter_ids:
            raise BadRequestError("Missing required parameters", component="ExportService")
        rows = self.build_rows(session, export_type, quarter_ids, hospital_ids, pharmacy_ids)
        if not rows:
            raise NotFoundError("No data found for export",
                                details={'type': export_type, 'quarters': list(quarter_ids)},
                                component="ExportService")
        try:
            export_file = self.render(rows, export_type, fmt)
        except Exception as e:
            handle_exception(e, context=f"rendering {export_type} as {fmt or 'xlsx'}",
                             re_raise_as=ExportError, component="ExportService")
        logger.info(f"[{get_correlation_id()}] Export {export_type} rendered as {export_file.filename} "
                    f"({export_file.row_count} rows).")
        return export_file
