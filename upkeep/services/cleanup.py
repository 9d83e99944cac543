import logging
from collections.abc import Iterator
from dataclasses import asdict, dataclass

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from upkeep.models import Exercise
from upkeep.services.matcher import Matched, match_orphan
from upkeep.services.merger import merge_exercise_references

log = logging.getLogger(__name__)


@dataclass
class OrphanRef:
    id: int
    name: str


@dataclass
class BatchCounts:
    merged: int = 0
    skipped: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def find_orphans(session: Session) -> list[OrphanRef]:
    """Return custom exercises that have neither an image nor a description."""
    statement = (
        select(Exercise)
        .where(Exercise.is_custom == True)  # noqa: E712
        .where(Exercise.image_url.is_(None))
        .where(Exercise.description.is_(None))
        .order_by(Exercise.id)
    )
    return [OrphanRef(id=e.id, name=e.name) for e in session.exec(statement).all()]


def batched(items: list, size: int) -> Iterator[tuple[int, list]]:
    """Yield ``(offset, chunk)`` pairs of at most ``size`` items."""
    if size < 1:
        raise ValueError("Batch size must be positive")
    for offset in range(0, len(items), size):
        yield offset, items[offset : offset + size]


def process_orphan(orphan: OrphanRef, session: Session) -> bool:
    """Match one orphan and merge it into its library twin. Returns True if merged."""
    match = match_orphan(orphan.name, orphan.id, session)
    if not isinstance(match, Matched):
        log.debug("No confident match for %r (%s)", orphan.name, type(match).__name__)
        return False

    merge_exercise_references(orphan.id, match.library_id, session)
    log.info(
        "Merged orphan exercise %r into %r (%s stage)",
        orphan.name,
        match.library_name,
        match.stage,
    )
    return True


def process_batch(batch: list[OrphanRef], engine: Engine) -> BatchCounts:
    """
    Process every orphan in ``batch``, each in its own session.

    A failure on one orphan is logged and counted as skipped; it never stops the
    rest of the batch.
    """
    counts = BatchCounts()
    for orphan in batch:
        try:
            with Session(engine) as session:
                merged = process_orphan(orphan, session)
        except Exception as exc:
            log.warning("Failed to process orphan %r: %s", orphan.name, exc)
            counts.skipped += 1
            continue

        if merged:
            counts.merged += 1
        else:
            counts.skipped += 1
    return counts
