import csv
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from io import BytesIO, StringIO
from typing import Mapping, Sequence
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from errors import ValidationError
from models import Transaction, TransactionType
from schemas import ImportRow


DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%m/%d/%Y", "%d/%m/%Y")
EXPORT_HEADER = [
    "Date",
    "Type",
    "Amount",
    "Description",
    "Category",
    "Payee",
    "Status",
    "Tags",
    "Notes",
]

_FORMULA_TRIGGERS = ("=", "+", "-", "@", "\t", "\r")
_DANGEROUS_PREFIXES = re.compile(
    r"^(cmd|powershell|bash|sh)\s*|^\.|^https?://", re.IGNORECASE
)


def sanitize_csv_value(value: str) -> str:
    """Prefix spreadsheet formula triggers with a tab so they render as text."""
    if not value or not value.strip():
        return ""
    value = value.strip()
    if value.startswith(_FORMULA_TRIGGERS) or _DANGEROUS_PREFIXES.match(value):
        return "\t" + value
    return value


def parse_date(value: object) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date '{text}'")


def parse_amount(value: object, *, allow_negative: bool = False) -> int:
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        amount = Decimal(str(value))
    else:
        clean = (
            str(value or "").strip().replace("€", "").replace("$", "").replace(" ", "")
        )
        clean = clean.replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
        try:
            amount = Decimal(clean)
        except InvalidOperation as exc:
            raise ValueError("Invalid amount") from exc
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def _cell(raw: Mapping[str, object], *names: str) -> str:
    for name in names:
        value = raw.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def row_from_mapping(raw: Mapping[str, object], row_number: int = 0) -> ImportRow:
    lowered = {str(k or "").strip().lower(): v for k, v in raw.items()}
    date_value = parse_date(lowered.get("date"))

    amount_raw = lowered.get("amount")
    cents = parse_amount(amount_raw if amount_raw is not None else "0", allow_negative=True)
    type_raw = _cell(lowered, "type").lower()
    if type_raw:
        txn_type = TransactionType(type_raw)
    else:
        txn_type = TransactionType.expense if cents < 0 else TransactionType.income
    cents = abs(cents)
    if cents == 0:
        raise ValueError("Amount must be greater than zero")

    description = _cell(lowered, "description", "note", "memo")
    if not description:
        raise ValueError("Description is required")

    tags_raw = _cell(lowered, "tags")
    tags = [t.strip() for t in re.split(r"[;,]", tags_raw) if t.strip()]
    return ImportRow(
        date=date_value,
        type=txn_type,
        amount_cents=cents,
        description=description[:200],
        category=_cell(lowered, "category") or None,
        payee=_cell(lowered, "payee", "merchant") or None,
        notes=_cell(lowered, "notes") or None,
        tags=tags,
        row_number=row_number,
    )


def decode_csv(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationError("File could not be read as UTF-8 CSV") from exc


def parse_csv(content: str) -> tuple[list[ImportRow], list[str]]:
    reader = csv.DictReader(StringIO(content))
    rows: list[ImportRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            rows.append(row_from_mapping(raw, idx))
        except Exception as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def parse_xlsx(content: bytes) -> tuple[list[ImportRow], list[str]]:
    try:
        workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
    except (BadZipFile, InvalidFileException, KeyError) as exc:
        raise ValidationError("Invalid XLSX file") from exc
    try:
        sheet = workbook.active
        values = sheet.iter_rows(values_only=True)
        header = next(values, None)
        if not header:
            return [], []
        names = [str(h or "").strip() for h in header]
        rows: list[ImportRow] = []
        errors: list[str] = []
        for idx, values_row in enumerate(values, start=1):
            if all(v is None or str(v).strip() == "" for v in values_row):
                continue
            try:
                rows.append(row_from_mapping(dict(zip(names, values_row)), idx))
            except Exception as exc:
                errors.append(f"Row {idx}: {exc}")
        return rows, errors
    finally:
        workbook.close()


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                txn.type.value,
                f"{txn.amount_cents / 100:.2f}",
                sanitize_csv_value(txn.description or ""),
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(txn.payee or ""),
                txn.status.value,
                sanitize_csv_value(";".join(t.name for t in txn.tags)),
                sanitize_csv_value(txn.notes or ""),
            ]
        )
    return output.getvalue()
