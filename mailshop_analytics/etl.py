"""
Job records + production spreadsheet import
===========================================

Two entry points into the analytics:

1) Backend job records (JSON). Requirements arrive as a list, a JSON-encoded
   string, or the legacy brace-wrapped string of escaped objects; clients as an
   object or a JSON string. Everything is normalised here, once, into
   ``Job`` / ``Requirement`` / ``Client`` so the rest of the package never
   inspects raw shapes.

2) Production spreadsheets (xlsx / xls / csv) with columns
   Job Number, Production Quantity, Date, Notes.
   parse -> validate against the in-memory job list -> entries ready for upload.
   Problems are reported as ``ImportIssue`` rows, never raised.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .tiers import normalize_process_type

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIG
# =============================================================================

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
ALLOWED_EXTENSIONS = {".xlsx", ".xls", ".csv"}

# Header matching is case-insensitive and substring based
COLUMN_ALIASES: Dict[str, List[str]] = {
    "job_number": ["job number", "job_number", "jobnumber", "job #", "job"],
    "quantity": ["production quantity", "quantity", "qty", "amount", "production"],
    "date": ["date", "production date", "entry date"],
    "notes": ["notes", "note", "comments", "comment", "description"],
}
REQUIRED_COLUMNS = ("job_number", "quantity")

TEMPLATE_COLUMNS = ["Job Number", "Production Quantity", "Date", "Notes"]

_EMPTY_MARKERS = {"", "undefined", "null", "#n/a", "n/a", "-", "nan", "none"}

_EXCEL_EPOCH = pd.Timestamp("1899-12-30")


# =============================================================================
# HELPERS
# =============================================================================

def _is_blank(x) -> bool:
    if x is None:
        return True
    if isinstance(x, float) and math.isnan(x):
        return True
    if x is pd.NaT:
        return True
    return isinstance(x, str) and x.strip() == ""


def _as_str(x) -> str:
    return "" if _is_blank(x) else str(x).strip()


def safe_float(x) -> float:
    """Lenient numeric parse: blanks, "undefined"/"null" and junk become 0.0."""
    if _is_blank(x):
        return 0.0
    if isinstance(x, bool):
        return float(x)
    if isinstance(x, (int, float, np.number)):
        v = float(x)
        return 0.0 if math.isnan(v) or math.isinf(v) else v
    s = str(x).strip()
    if s.lower() in _EMPTY_MARKERS:
        return 0.0
    # remove currency symbols and thousands separators
    s = s.replace("$", "").replace(",", "")
    try:
        v = float(s)
    except ValueError:
        return 0.0
    return 0.0 if math.isnan(v) or math.isinf(v) else v


def _optional_float(x) -> Optional[float]:
    if _is_blank(x) or str(x).strip().lower() in _EMPTY_MARKERS:
        return None
    return safe_float(x)


def to_timestamp(x) -> Optional[pd.Timestamp]:
    """Epoch milliseconds (backend convention), datetimes or ISO strings -> Timestamp."""
    if _is_blank(x):
        return None
    if isinstance(x, pd.Timestamp):
        return x
    if isinstance(x, (datetime, date)):
        return pd.Timestamp(x)
    if isinstance(x, (int, float, np.number)) and not isinstance(x, bool):
        if x <= 0:
            return None
        return pd.to_datetime(int(x), unit="ms")
    s = str(x).strip()
    if s.isdigit():
        return pd.to_datetime(int(s), unit="ms")
    ts = pd.to_datetime(s, errors="coerce")
    return None if pd.isna(ts) else ts


def to_epoch_ms(ts: Optional[pd.Timestamp]) -> Optional[int]:
    if ts is None or pd.isna(ts):
        return None
    return int(pd.Timestamp(ts).value // 1_000_000)


# =============================================================================
# BACKEND RECORDS
# =============================================================================

@dataclass(frozen=True)
class Client:
    id: int
    name: str


UNKNOWN_CLIENT = Client(0, "Unknown")


@dataclass
class Requirement:
    process_type: str
    price_per_m: float = 0.0
    # process-specific fields (paper_size, basic_oe, pockets, *_cost, ...)
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Job:
    id: int
    job_number: int
    quantity: int = 0
    job_name: str = ""
    client: Client = UNKNOWN_CLIENT
    billing_rate: float = 0.0
    total_billing: float = 0.0
    add_on_charges: float = 0.0
    ext_price: float = 0.0
    estimated_cost: float = 0.0
    actual_cost_per_m: Optional[float] = None
    start_date: Optional[pd.Timestamp] = None
    due_date: Optional[pd.Timestamp] = None
    requirements: List[Requirement] = field(default_factory=list)
    facilities_id: Optional[int] = None
    service_type: str = ""
    time_estimate: Optional[float] = None
    max_hours: Optional[float] = None


@dataclass
class ProductionEntry:
    job: int
    date: pd.Timestamp
    actual_quantity: float
    notes: Optional[str] = None
    facilities_id: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "job": self.job,
            "date": to_epoch_ms(self.date),
            "actual_quantity": self.actual_quantity,
        }
        if self.notes:
            payload["notes"] = self.notes
        if self.facilities_id is not None:
            payload["facilities_id"] = self.facilities_id
        return payload

    @classmethod
    def from_record(cls, raw: Dict[str, Any]) -> "ProductionEntry":
        return cls(
            job=int(safe_float(raw.get("job"))),
            date=to_timestamp(raw.get("date")),
            actual_quantity=safe_float(raw.get("actual_quantity")),
            notes=_as_str(raw.get("notes")) or None,
            facilities_id=raw.get("facilities_id"),
        )


@dataclass
class JobCostEntry:
    job: int
    date: pd.Timestamp
    actual_cost_per_m: float
    notes: Optional[str] = None
    facilities_id: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "job": self.job,
            "date": to_epoch_ms(self.date),
            "actual_cost_per_m": self.actual_cost_per_m,
        }
        if self.notes:
            payload["notes"] = self.notes
        if self.facilities_id is not None:
            payload["facilities_id"] = self.facilities_id
        return payload

    @classmethod
    def from_record(cls, raw: Dict[str, Any]) -> "JobCostEntry":
        return cls(
            job=int(safe_float(raw.get("job"))),
            date=to_timestamp(raw.get("date")),
            actual_cost_per_m=safe_float(raw.get("actual_cost_per_m")),
            notes=_as_str(raw.get("notes")) or None,
            facilities_id=raw.get("facilities_id"),
        )


_LEGACY_REQ = re.compile(r'"\{[^}]+\}"')


def _requirement_dicts(raw) -> List[dict]:
    if raw is None:
        return []
    if isinstance(raw, dict):
        return [raw]
    if isinstance(raw, list):
        return [r for r in raw if isinstance(r, dict)]

    s = str(raw).strip()
    if s in {"", "{}", "[]"}:
        return []
    if s.startswith("["):
        try:
            parsed = json.loads(s)
        except json.JSONDecodeError:
            logger.warning("Unparseable requirements payload: %.80s", s)
            return []
        return [r for r in parsed if isinstance(r, dict)] if isinstance(parsed, list) else []

    # Legacy: {"{\"process_type\":\"insert\",...}","{...}"}
    out = []
    for match in _LEGACY_REQ.findall(s[1:-1]):
        try:
            out.append(json.loads(match[1:-1].replace("\\", "")))
        except json.JSONDecodeError:
            continue
    return out


def parse_requirements(raw) -> List[Requirement]:
    reqs = []
    for d in _requirement_dicts(raw):
        attrs = {k: v for k, v in d.items() if k not in {"process_type", "price_per_m"}}
        reqs.append(Requirement(
            process_type=normalize_process_type(d.get("process_type")),
            price_per_m=safe_float(d.get("price_per_m")),
            attributes=attrs,
        ))
    return reqs


def parse_client(raw, client_id=None) -> Client:
    if isinstance(raw, str):
        s = raw.strip()
        if s.startswith("{"):
            try:
                raw = json.loads(s)
            except json.JSONDecodeError:
                return UNKNOWN_CLIENT
        elif s:
            return Client(int(safe_float(client_id)), s)
    if isinstance(raw, dict) and raw.get("name"):
        return Client(int(safe_float(raw.get("id", client_id))), str(raw["name"]))
    return UNKNOWN_CLIENT


def parse_job(raw: Dict[str, Any]) -> Job:
    """Normalise one backend job record."""
    return Job(
        id=int(safe_float(raw.get("id"))),
        job_number=int(safe_float(raw.get("job_number"))),
        quantity=max(int(safe_float(raw.get("quantity"))), 0),
        job_name=_as_str(raw.get("job_name")),
        client=parse_client(raw.get("client"), raw.get("clients_id")),
        billing_rate=safe_float(raw.get("billing_rate")),
        total_billing=safe_float(raw.get("total_billing")),
        add_on_charges=safe_float(raw.get("add_on_charges")),
        ext_price=safe_float(raw.get("ext_price")),
        estimated_cost=safe_float(raw.get("estimated_cost")),
        actual_cost_per_m=_optional_float(raw.get("actual_cost_per_m")),
        start_date=to_timestamp(raw.get("start_date")),
        due_date=to_timestamp(raw.get("due_date")),
        requirements=parse_requirements(raw.get("requirements")),
        facilities_id=raw.get("facilities_id"),
        service_type=_as_str(raw.get("service_type")),
        time_estimate=_optional_float(raw.get("time_estimate")),
        max_hours=_optional_float(raw.get("max_hours")),
    )


def parse_jobs(records: Iterable[Dict[str, Any]]) -> List[Job]:
    jobs = [parse_job(r) for r in records]
    logger.info("Parsed %d job records", len(jobs))
    return jobs


def apply_cost_entries(
    jobs: Iterable[Job],
    entries: Iterable[JobCostEntry],
    start: Optional[pd.Timestamp] = None,
    end: Optional[pd.Timestamp] = None,
) -> List[Job]:
    """
    Copy of ``jobs`` with ``actual_cost_per_m`` set to the mean of each job's
    cost entries dated in [start, end). Jobs without entries keep their value.
    """
    by_job: Dict[int, List[float]] = {}
    for e in entries:
        if e.date is not None:
            if start is not None and e.date < start:
                continue
            if end is not None and e.date >= end:
                continue
        if e.actual_cost_per_m > 0:
            by_job.setdefault(e.job, []).append(e.actual_cost_per_m)

    out = []
    for job in jobs:
        costs = by_job.get(job.id)
        if costs:
            job = replace(job, actual_cost_per_m=sum(costs) / len(costs))
        out.append(job)
    return out


# =============================================================================
# SPREADSHEET PARSING
# =============================================================================

@dataclass
class ImportIssue:
    row_index: int  # 1-based sheet row; 0 for file-level problems
    field: str
    message: str
    value: Any = None


@dataclass
class ParsedRow:
    job_number: Union[int, str]
    quantity: float
    row_index: int
    date: Optional[pd.Timestamp] = None
    notes: Optional[str] = None


@dataclass
class ParseResult:
    rows: List[ParsedRow] = field(default_factory=list)
    errors: List[ImportIssue] = field(default_factory=list)
    warnings: List[ImportIssue] = field(default_factory=list)


def validate_upload(filename: str, size: int) -> Optional[str]:
    """Return an error message for files we refuse to read, else None."""
    if size > MAX_UPLOAD_BYTES:
        return (
            f"File size ({size / 1024 / 1024:.2f}MB) exceeds maximum allowed size "
            f"({MAX_UPLOAD_BYTES // (1024 * 1024)}MB)"
        )
    if Path(filename).suffix.lower() not in ALLOWED_EXTENSIONS:
        return "Invalid file type. Please upload an Excel file (.xlsx, .xls) or CSV file (.csv)"
    return None


def _read_sheet(source, filename: Optional[str]) -> pd.DataFrame:
    name = filename or getattr(source, "name", None) or (str(source) if isinstance(source, (str, Path)) else "")
    if Path(str(name)).suffix.lower() == ".csv":
        return pd.read_csv(source, header=None, dtype=object, skip_blank_lines=True)
    engine = "xlrd" if Path(str(name)).suffix.lower() == ".xls" else "openpyxl"
    return pd.read_excel(source, sheet_name=0, header=None, dtype=object, engine=engine)


def _map_columns(header: List[Any]) -> Dict[str, int]:
    mapping = {key: -1 for key in COLUMN_ALIASES}
    for idx, cell in enumerate(header):
        if _is_blank(cell):
            continue
        h = str(cell).strip().lower()
        for key, aliases in COLUMN_ALIASES.items():
            if mapping[key] == -1 and any(a in h for a in aliases):
                mapping[key] = idx
    return mapping


def parse_job_number(value) -> Union[int, str]:
    if _is_blank(value):
        raise ValueError("Job number is required")
    digits = re.sub(r"[^0-9.]", "", str(value).strip())
    try:
        n = float(digits)
    except ValueError:
        raise ValueError(f'Invalid job number: "{value}"')
    return int(n) if n.is_integer() else digits


def parse_quantity(value) -> float:
    if _is_blank(value):
        raise ValueError("Quantity is required")
    try:
        q = float(str(value).replace(",", "").strip())
    except ValueError:
        raise ValueError(f'Invalid quantity: "{value}". Must be a positive number')
    if not math.isfinite(q) or q < 0:
        raise ValueError(f'Invalid quantity: "{value}". Must be a positive number')
    return int(q) if q.is_integer() else q


_ISO_DATE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_US_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")


def parse_sheet_date(value) -> pd.Timestamp:
    """Spreadsheet date cell: datetime, Excel serial number, ISO or US string."""
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return pd.Timestamp(value)
    if isinstance(value, (int, float, np.number)) and not isinstance(value, bool):
        return _EXCEL_EPOCH + pd.to_timedelta(float(value), unit="D")

    s = str(value).strip()
    try:
        m = _ISO_DATE.match(s)
        if m:
            return pd.Timestamp(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        m = _US_DATE.match(s)
        if m:
            return pd.Timestamp(int(m.group(3)), int(m.group(1)), int(m.group(2)))
        ts = pd.to_datetime(s)
    except (ValueError, OverflowError):
        ts = pd.NaT
    if pd.isna(ts):
        raise ValueError(f'Invalid date format: "{value}". Expected: YYYY-MM-DD or MM/DD/YYYY')
    return ts


def _parse_row(cells: List[Any], columns: Dict[str, int], row_index: int) -> ParsedRow:
    def cell(key):
        idx = columns[key]
        return cells[idx] if 0 <= idx < len(cells) else None

    row = ParsedRow(
        job_number=parse_job_number(cell("job_number")),
        quantity=parse_quantity(cell("quantity")),
        row_index=row_index,
    )
    if not _is_blank(cell("date")):
        row.date = parse_sheet_date(cell("date"))
    if not _is_blank(cell("notes")):
        row.notes = str(cell("notes")).strip()
    return row


def parse_production_file(source, filename: Optional[str] = None) -> ParseResult:
    """
    Read the first sheet (or CSV) of a production upload.

    Row-level problems are collected and parsing continues with the next row.
    A missing required column stops parsing after the header.
    """
    result = ParseResult()
    try:
        raw = _read_sheet(source, filename)
    except Exception as e:  # openpyxl / xlrd / csv errors all surface differently
        logger.warning("Failed to read production file %s: %s", filename, e)
        result.errors.append(ImportIssue(0, "file", f"Failed to parse Excel file: {e}"))
        return result

    raw = raw.dropna(how="all")
    if raw.empty:
        result.errors.append(ImportIssue(0, "file", "Excel file is empty"))
        return result

    header = raw.iloc[0].tolist()
    columns = _map_columns(header)
    for key in REQUIRED_COLUMNS:
        if columns[key] == -1:
            label = "Job Number" if key == "job_number" else "Quantity"
            result.errors.append(ImportIssue(
                1, "headers",
                f"Missing required column: {label}. Expected one of: {', '.join(COLUMN_ALIASES[key])}",
            ))
    if result.errors:
        return result

    for idx, cells in raw.iloc[1:].iterrows():
        row_index = int(idx) + 1  # sheet rows are 1-based
        values = cells.tolist()
        if all(_is_blank(v) for v in values):
            continue
        try:
            result.rows.append(_parse_row(values, columns, row_index))
        except ValueError as e:
            result.errors.append(ImportIssue(row_index, "row", str(e)))

    if not result.rows and not result.errors:
        result.warnings.append(ImportIssue(0, "file", "No data rows found in Excel file"))

    logger.info(
        "Parsed production file %s: %d rows, %d errors",
        filename or getattr(source, "name", ""), len(result.rows), len(result.errors),
    )
    return result


def write_import_template(target) -> None:
    """Write the production import template (data + instructions sheets)."""
    sample = pd.DataFrame(
        [
            ["12345", 5000, "2025-01-15", "First batch completed"],
            ["12346", 3200, "2025-01-15", ""],
            ["12347", 1500, "", "Date will default to today if empty"],
        ],
        columns=TEMPLATE_COLUMNS,
    )
    instructions = pd.DataFrame(
        [
            ["Job Number", "Required", "The job number from your system (e.g., 12345)"],
            ["Production Quantity", "Required", "Number of units produced (must be positive)"],
            ["Date", "Optional", "Production date (YYYY-MM-DD or MM/DD/YYYY); defaults to today"],
            ["Notes", "Optional", "Free-text notes for this entry"],
        ],
        columns=["Column", "Required", "Description"],
    )
    with pd.ExcelWriter(target, engine="openpyxl") as writer:
        sample.to_excel(writer, sheet_name="Production Data", index=False)
        instructions.to_excel(writer, sheet_name="Instructions", index=False)


# =============================================================================
# VALIDATION
# =============================================================================

@dataclass
class ValidationOptions:
    facilities_id: Optional[int] = None
    allow_future_dates: bool = False
    check_duplicates: bool = False
    existing_entries: List[ProductionEntry] = field(default_factory=list)
    default_date: Optional[pd.Timestamp] = None
    now: Optional[pd.Timestamp] = None


@dataclass
class RowValidation:
    is_valid: bool = True
    matched_job: Optional[Job] = None
    entry_date: Optional[pd.Timestamp] = None
    errors: List[ImportIssue] = field(default_factory=list)
    warnings: List[ImportIssue] = field(default_factory=list)


@dataclass
class ValidatedRow:
    row: ParsedRow
    validation: RowValidation
    entry: Optional[ProductionEntry] = None


@dataclass
class ValidationSummary:
    total: int = 0
    valid: int = 0
    invalid: int = 0
    warnings: int = 0
    total_quantity: float = 0.0
    facilities: Dict[int, int] = field(default_factory=dict)


def _job_index(jobs: Iterable[Job]) -> Dict[int, Job]:
    index: Dict[int, Job] = {}
    for job in jobs:
        index.setdefault(job.job_number, job)
    return index


def _lookup(job_number, index: Dict[int, Job]) -> Optional[Job]:
    try:
        n = float(job_number)
    except (TypeError, ValueError):
        return None
    if math.isnan(n):
        return None
    return index.get(int(math.floor(n)))


def validate_production_row(
    row: ParsedRow,
    jobs: Union[Iterable[Job], Dict[int, Job]],
    options: Optional[ValidationOptions] = None,
) -> RowValidation:
    options = options or ValidationOptions()
    index = jobs if isinstance(jobs, dict) else _job_index(jobs)
    now = options.now or pd.Timestamp.now()
    result = RowValidation()

    def warn(fld, msg):
        result.warnings.append(ImportIssue(row.row_index, fld, msg))

    job = _lookup(row.job_number, index)
    if job is None:
        result.is_valid = False
        result.errors.append(ImportIssue(
            row.row_index, "job_number", f'Job number "{row.job_number}" not found in system', row.job_number,
        ))
        return result
    result.matched_job = job

    if options.facilities_id and job.facilities_id != options.facilities_id:
        warn(
            "facilities_id",
            f"Job belongs to a different facility (expected: {options.facilities_id}, found: {job.facilities_id})",
        )

    if row.quantity <= 0:
        result.is_valid = False
        result.errors.append(ImportIssue(row.row_index, "quantity", "Quantity must be greater than 0", row.quantity))
    if job.quantity and row.quantity > job.quantity:
        warn("quantity", f"Quantity ({row.quantity:,}) exceeds job total ({job.quantity:,})")

    if row.date is not None:
        entry_date = row.date
        if not options.allow_future_dates and entry_date > now:
            warn("date", "Date is in the future")
        if job.start_date is not None and entry_date < job.start_date:
            warn("date", f"Date is before job start date ({job.start_date:%m/%d/%Y})")
        if job.due_date is not None and entry_date > job.due_date:
            warn("date", f"Date is after job due date ({job.due_date:%m/%d/%Y})")
    elif options.default_date is not None:
        entry_date = options.default_date
    else:
        entry_date = now
        warn("date", "No date provided, using current date")
    result.entry_date = entry_date

    if options.check_duplicates:
        for existing in options.existing_entries:
            if existing.job == job.id and existing.date is not None and existing.date.date() == entry_date.date():
                warn(
                    "duplicate",
                    f"Production entry already exists for this job on {entry_date:%m/%d/%Y} "
                    f"({existing.actual_quantity:,} units)",
                )
                break

    return result


def validate_production_rows(
    rows: Iterable[ParsedRow],
    jobs: Iterable[Job],
    options: Optional[ValidationOptions] = None,
) -> List[ValidatedRow]:
    index = _job_index(jobs)
    out = []
    for row in rows:
        v = validate_production_row(row, index, options)
        entry = None
        if v.is_valid and v.matched_job is not None:
            entry = ProductionEntry(
                job=v.matched_job.id,
                date=v.entry_date,
                actual_quantity=row.quantity,
                notes=row.notes,
                facilities_id=v.matched_job.facilities_id,
            )
        out.append(ValidatedRow(row=row, validation=v, entry=entry))
    return out


def duplicate_check_window(
    rows: Iterable[ParsedRow],
    options: Optional[ValidationOptions] = None,
) -> Tuple[pd.Timestamp, pd.Timestamp]:
    """Half-open day range covering every date the rows will be entered on."""
    options = options or ValidationOptions()
    fallback = options.default_date if options.default_date is not None else (options.now or pd.Timestamp.now())
    days = [(r.date if r.date is not None else fallback).normalize() for r in rows]
    if not days:
        days = [fallback.normalize()]
    return min(days), max(days) + pd.Timedelta(days=1)


def validation_summary(rows: Iterable[ValidatedRow]) -> ValidationSummary:
    s = ValidationSummary()
    for r in rows:
        s.total += 1
        if r.validation.is_valid:
            s.valid += 1
            s.total_quantity += r.row.quantity
            fid = r.validation.matched_job.facilities_id
            if fid is not None:
                s.facilities[fid] = s.facilities.get(fid, 0) + 1
        else:
            s.invalid += 1
        if r.validation.warnings:
            s.warnings += 1
    return s


def entries_to_upload(rows: Iterable[ValidatedRow]) -> List[ProductionEntry]:
    """Only rows that passed validation are sent to the backend."""
    return [r.entry for r in rows if r.validation.is_valid and r.entry is not None]


def preview_frame(rows: Iterable[ValidatedRow]) -> pd.DataFrame:
    """Flat table for the import preview screen."""
    records = []
    for r in rows:
        job = r.validation.matched_job
        records.append({
            "Row": r.row.row_index,
            "Job #": r.row.job_number,
            "Job Name": job.job_name if job else "",
            "Quantity": r.row.quantity,
            "Date": r.validation.entry_date,
            "Notes": r.row.notes or "",
            "Status": "Valid" if r.validation.is_valid else "Invalid",
            "Messages": "; ".join(i.message for i in r.validation.errors + r.validation.warnings),
        })
    return pd.DataFrame.from_records(
        records, columns=["Row", "Job #", "Job Name", "Quantity", "Date", "Notes", "Status", "Messages"],
    )
