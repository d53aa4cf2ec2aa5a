"""
Value normalization for cheque fields.
Cleans amounts, dates, cheque numbers and names coming from the recognition
gateway or typed by the caller.
"""
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

from core.logger import setup_logger

logger = setup_logger(__name__)

CENT = Decimal("0.01")

DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%m-%d-%Y",
    "%m-%d-%y",
    "%Y/%m/%d",
    "%B %d, %Y",
    "%B %d %Y",
    "%b %d, %Y",
    "%b %d %Y",
    "%d %B %Y",
    "%d %b %Y",
)

# 1,250.50 and 1250.5: comma groups thousands, dot is the decimal point
_POINT_DECIMAL_RE = re.compile(r"-?(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?")
# 1.250,50 and 250,50: dot groups thousands, comma plus two digits is the decimal part
_COMMA_DECIMAL_RE = re.compile(r"-?(?:\d{1,3}(?:\.\d{3})+|\d+),\d{2}")

MAX_CHEQUE_NUMBER_LENGTH = 50
MAX_NAME_LENGTH = 255


def clean_amount(value: Any) -> Optional[Decimal]:
    """
    Clean and normalize a cheque amount.
    Removes currency symbols and spaces. Accepts comma or dot as the
    decimal separator when the grouping is unambiguous; anything else is
    rejected rather than guessed.

    Args:
        value: Raw amount value (string or number)

    Returns:
        Positive Decimal rounded to cents, or None if invalid
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float, Decimal)):
        amount_str = str(value)
    elif isinstance(value, str):
        amount_str = value.strip()
    else:
        return None

    if not amount_str:
        return None

    amount_str = amount_str.replace(" ", "").replace("\xa0", "")
    amount_str = amount_str.replace("$", "").replace("USD", "").replace("CAD", "")

    if _POINT_DECIMAL_RE.fullmatch(amount_str):
        amount_str = amount_str.replace(",", "")
    elif _COMMA_DECIMAL_RE.fullmatch(amount_str):
        amount_str = amount_str.replace(".", "").replace(",", ".")
    else:
        logger.warning(f"Failed to parse amount: '{value}'")
        return None

    try:
        result = Decimal(amount_str)
    except InvalidOperation:
        logger.warning(f"Failed to parse amount: '{value}'")
        return None

    if result <= 0:
        logger.warning(f"Non-positive amount discarded: {result}")
        return None

    return result.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_date(value: Any) -> Optional[date]:
    """
    Parse a cheque date written in one of the common formats.

    Returns:
        date or None if the value cannot be parsed
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    text = " ".join(value.strip().split())
    if not text:
        return None

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    logger.warning(f"Failed to parse date: '{value}'")
    return None


def clean_cheque_number(value: Any) -> Optional[str]:
    """Strip labels and separators from a cheque number."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        return None

    text = re.sub(
        r"^(?:(?:cheque|check|chq|number|no)\b\.?\s*|#\s*)+", "", value.strip(), flags=re.IGNORECASE
    )
    text = re.sub(r"[\s#]", "", text)
    if not text or len(text) > MAX_CHEQUE_NUMBER_LENGTH:
        return None
    if not re.fullmatch(r"[A-Za-z0-9\-]+", text):
        return None
    return text


def clean_name(value: Any) -> Optional[str]:
    """Collapse whitespace in a counterparty or bank name."""
    if not isinstance(value, str):
        return None
    text = " ".join(value.strip().split())
    if not text or len(text) > MAX_NAME_LENGTH:
        return None
    return text


def clean_identifier(value: Any) -> Optional[str]:
    """Normalize an explicit counterparty id hint to a string."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return str(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    return text or None


FIELD_CLEANERS = {
    "cheque_number": clean_cheque_number,
    "date": parse_date,
    "amount": clean_amount,
    "customer_name": clean_name,
    "vendor_name": clean_name,
    "customer_id": clean_identifier,
    "vendor_id": clean_identifier,
    "bank_name": clean_name,
}


# Labels a caller may type in "label: value" form
DIRECTIVE_LABELS = {
    "cheque": "cheque_number",
    "cheque number": "cheque_number",
    "cheque no": "cheque_number",
    "cheque #": "cheque_number",
    "check": "cheque_number",
    "check number": "cheque_number",
    "check no": "cheque_number",
    "number": "cheque_number",
    "cheque_number": "cheque_number",
    "date": "date",
    "amount": "amount",
    "customer": "customer_name",
    "customer name": "customer_name",
    "customer_name": "customer_name",
    "payee": "customer_name",
    "customer id": "customer_id",
    "customer_id": "customer_id",
    "vendor": "vendor_name",
    "vendor name": "vendor_name",
    "vendor_name": "vendor_name",
    "vendor id": "vendor_id",
    "vendor_id": "vendor_id",
    "bank": "bank_name",
    "bank_name": "bank_name",
}

_DIRECTIVE_RE = re.compile(r"^\s*([A-Za-z_ #]+?)\s*[:=]\s*(.+?)\s*$")


def clean_field(name: str, value: Any) -> Any:
    """Apply the cleaner for a candidate field. Returns None if invalid."""
    cleaner = FIELD_CLEANERS.get(name)
    if cleaner is None:
        return None
    return cleaner(value)


def field_for_label(label: str) -> Optional[str]:
    """Map a caller-facing label ("cheque no", "vendor id", ...) to a field name."""
    return DIRECTIVE_LABELS.get(" ".join(label.lower().split()))


def parse_field_directives(text: Optional[str]) -> Tuple[Dict[str, Any], str]:
    """
    Split caller text into "label: value" directives and residual free text.

    Lines (or ';'-separated parts) whose label is known and whose value
    cleans successfully become directives. Everything else is returned as
    residual text for the recognition gateway.

    Returns:
        (cleaned values by field name, residual text)
    """
    directives: Dict[str, Any] = {}
    residual = []

    if not text:
        return directives, ""

    for part in re.split(r"[\n;]", text):
        if not part.strip():
            continue
        match = _DIRECTIVE_RE.match(part)
        if match:
            label = match.group(1).strip()
            field_name = field_for_label(label)
            if field_name:
                cleaned = clean_field(field_name, match.group(2))
                if cleaned is not None:
                    directives[field_name] = cleaned
                    continue
                logger.warning(f"Discarding invalid value for '{label}'")
        residual.append(part.strip())

    return directives, " ".join(residual)
