from __future__ import annotations

from sqlalchemy.orm import Session

from warranty.models import NumberSequence

CLAIM_PREFIX = "WAR"
TICKET_PREFIX = "RPR"
BATCH_PREFIX = "BATCH"


def next_number(db: Session, prefix: str, year: int) -> str:
    """
    Allocate the next human-readable number for ``prefix`` in ``year``.

    The counter row is locked for the rest of the caller's transaction, so
    the number is only burned if the caller commits.
    """
    sequence = (
        db.query(NumberSequence)
        .filter_by(prefix=prefix, year=year)
        .with_for_update()
        .first()
    )
    if sequence is None:
        sequence = NumberSequence(prefix=prefix, year=year, last_value=0)
        db.add(sequence)
    sequence.last_value = (sequence.last_value or 0) + 1
    db.flush()
    return f"{prefix}-{year}-{sequence.last_value:06d}"
