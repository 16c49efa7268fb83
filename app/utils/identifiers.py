from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.models.retrospective import Retrospective

RETROSPECTIVE_ID_PREFIX = "RTR"
RETROSPECTIVE_ID_SUFFIX_WIDTH = 4


def _format_base36(number: int) -> str:
    if number < 0:
        raise ValueError("number must be non-negative")
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    if number == 0:
        return "0"
    result = []
    while number:
        number, remainder = divmod(number, 36)
        result.append(digits[remainder])
    return "".join(reversed(result))


def _next_retrospective_sequence(db: Session, date_prefix: str) -> int:
    like_pattern = f"{date_prefix}-%"
    latest: Optional[str] = (
        db.query(Retrospective.retrospective_id)
        .filter(Retrospective.retrospective_id.like(like_pattern))
        .order_by(Retrospective.retrospective_id.desc())
        .limit(1)
        .scalar()
    )
    if not latest:
        return 1
    try:
        suffix = latest.split("-")[-1]
        return int(suffix, 36) + 1
    except (ValueError, IndexError):
        return 1


def generate_retrospective_id(
    db: Session, created_at: Optional[datetime] = None
) -> str:
    """
    Construct a unique session identifier with the format RTRYYYYMMDD-XXXX
    where the suffix is a zero-padded base36 sequence scoped to the given day.
    """
    timestamp = (created_at or datetime.now(timezone.utc)).astimezone(timezone.utc)
    date_prefix = f"{RETROSPECTIVE_ID_PREFIX}{timestamp:%Y%m%d}"
    sequence = _next_retrospective_sequence(db, date_prefix)
    suffix = _format_base36(sequence).upper().rjust(RETROSPECTIVE_ID_SUFFIX_WIDTH, "0")
    return f"{date_prefix}-{suffix}"
