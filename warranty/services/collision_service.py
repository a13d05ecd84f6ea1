from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from warranty.models import (
    BarcodeBatch,
    BatchCollision,
    CollisionResolution,
    CollisionType,
)
from warranty.observability import increment_counter
from warranty.services.warranty_store import WarrantyStore


@dataclass(frozen=True)
class CollisionOutcome:
    """A detected duplicate and what the detector decided to do about it."""

    slot: int
    attempt: int
    value: str
    collision_type: CollisionType
    resolution: CollisionResolution
    existing_barcode_id: Optional[int] = None

    @property
    def regenerate(self) -> bool:
        return self.resolution == CollisionResolution.REGENERATED


class CollisionDetector:
    """
    Decides whether batch candidates are fresh.

    Two sources are consulted: the strings this batch has already accepted
    (kept in memory for the lifetime of one run) and the unique index of the
    barcode table. The index stays the source of truth; the in-memory set only
    saves round trips for in-batch repeats.
    """

    def __init__(self, db_session: Session, store: WarrantyStore, max_retries: int) -> None:
        self.db = db_session
        self.store = store
        self.max_retries = max_retries
        self._accepted: Set[str] = set()
        self.logger = logging.getLogger(__name__)

    @property
    def accepted_count(self) -> int:
        return len(self._accepted)

    def claim(self, value: str) -> bool:
        """Register ``value`` for this batch; False when an earlier slot already holds it."""
        if value in self._accepted:
            return False
        self._accepted.add(value)
        return True

    def release(self, values: Iterable[str]) -> None:
        for value in values:
            self._accepted.discard(value)

    def find_in_store(self, values: Iterable[str]) -> Dict[str, int]:
        return self.store.existing_values(values)

    def resolve(
        self,
        slot: int,
        attempt: int,
        value: str,
        collision_type: CollisionType,
        existing_barcode_id: Optional[int] = None,
    ) -> CollisionOutcome:
        # attempt 0 is the first draw; max_retries regenerations follow it
        resolution = (
            CollisionResolution.REGENERATED
            if attempt < self.max_retries
            else CollisionResolution.DROPPED
        )
        increment_counter(
            "barcode_collisions_total",
            labels={"type": collision_type.value, "resolution": resolution.value},
        )
        self.logger.info(
            "Collision on slot %s attempt %s (%s), %s",
            slot,
            attempt,
            collision_type.value,
            resolution.value,
        )
        return CollisionOutcome(
            slot=slot,
            attempt=attempt,
            value=value,
            collision_type=collision_type,
            resolution=resolution,
            existing_barcode_id=existing_barcode_id,
        )

    def record(
        self,
        batch: BarcodeBatch,
        outcome: CollisionOutcome,
        detected_at: datetime,
    ) -> BatchCollision:
        """Stage a collision row on the batch; the caller's commit persists it."""
        collision = BatchCollision(
            batchID=batch.batchID,
            slot_index=outcome.slot,
            attempt=outcome.attempt,
            barcode_value=outcome.value,
            collision_type=outcome.collision_type,
            existing_barcodeID=outcome.existing_barcode_id,
            detected_at=detected_at,
        )
        collision.resolve(outcome.resolution, detected_at)
        self.db.add(collision)
        return collision

    def list_for_batch(
        self,
        batch_id: int,
        collision_type: Optional[CollisionType] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[List[BatchCollision], int]:
        query = self.db.query(BatchCollision).filter(BatchCollision.batchID == batch_id)
        if collision_type is not None:
            query = query.filter(BatchCollision.collision_type == collision_type)
        total = query.count()
        items = (
            query.order_by(BatchCollision.collisionID)
            .offset((max(page, 1) - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return items, total
