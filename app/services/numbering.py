from sqlalchemy.orm import Session

from app.models.billing import DocumentSequence

INVOICE_SEQUENCE_KEY = "invoice_number"
INVOICE_PREFIX = "INV-"
INVOICE_PADDING = 6


def _format_number(prefix: str | None, padding: int | None, value: int) -> str:
    prefix_value = prefix or ""
    pad = max(int(padding or 0), 0)
    if pad > 0:
        return f"{prefix_value}{value:0{pad}d}"
    return f"{prefix_value}{value}"


def _next_sequence_value(db: Session, key: str, start_value: int) -> int:
    sequence = (
        db.query(DocumentSequence)
        .filter(DocumentSequence.key == key)
        .with_for_update()
        .first()
    )
    if not sequence:
        sequence = DocumentSequence(key=key, next_value=start_value)
        db.add(sequence)
        db.flush()
    value = sequence.next_value
    sequence.next_value = value + 1
    db.flush()
    return value


def generate_invoice_number(db: Session, start_value: int = 1) -> str:
    """Allocate the next local invoice number, e.g. ``INV-000042``."""
    value = _next_sequence_value(db, INVOICE_SEQUENCE_KEY, start_value)
    return _format_number(INVOICE_PREFIX, INVOICE_PADDING, value)
