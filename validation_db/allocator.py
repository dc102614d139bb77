"""
Load-balancing allocator.

A first-time participant gets the ``batch_size`` least-assigned slices, ties
broken at random; a returning participant always gets the batch they were
given the first time.

Fairness comes from reading live counts out of the ledger on every new
batch. Consistency comes from the ledger's atomic batch commit: two
concurrent first requests for the same participant end up with one batch.
"""

import logging
import random
from typing import Iterable, Mapping, Optional, Protocol, Sequence, runtime_checkable

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 15


@runtime_checkable
class SliceSource(Protocol):
    """What the allocator needs from the slice catalog."""

    def list_all_ids(self) -> Sequence[str]:
        ...

    def get_by_ids(self, ids: Iterable[str]) -> Mapping[str, dict]:
        ...


@runtime_checkable
class AssignmentRecord(Protocol):
    """What the allocator needs from the assignment ledger."""

    def counts_by_slice(self) -> Mapping[str, int]:
        ...

    def assignments_for_participant(self, participant_id: str) -> Sequence[str]:
        ...

    def insert_batch(self, participant_id: str, slice_ids: Sequence[str]) -> tuple[list[str], bool]:
        ...


def rank_slices(
    slice_ids: Iterable[str],
    counts: Mapping[str, int],
    rng: Optional[random.Random] = None,
) -> list[str]:
    """
    Order slice ids least-assigned first.

    Ties are broken by a fresh random draw per call, so slices that share a
    count (usually zero) are not biased toward low ids.
    """
    rng = rng or random
    keyed = [(counts.get(slice_id, 0), rng.random(), slice_id) for slice_id in slice_ids]
    keyed.sort()
    return [slice_id for _, _, slice_id in keyed]


def select_batch(
    slice_ids: Iterable[str],
    counts: Mapping[str, int],
    batch_size: int,
    rng: Optional[random.Random] = None,
) -> list[str]:
    """The first ``batch_size`` ranked slices (all of them if the catalog is smaller)."""
    return rank_slices(slice_ids, counts, rng)[:batch_size]


class Allocator:
    """Assigns fixed-size slice batches to participants."""

    def __init__(
        self,
        slices: SliceSource,
        ledger: AssignmentRecord,
        batch_size: int = DEFAULT_BATCH_SIZE,
        rng: Optional[random.Random] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.slices = slices
        self.ledger = ledger
        self.batch_size = batch_size
        self.rng = rng

    def resolve_slice_ids(self, participant_id: str) -> list[str]:
        """The participant's slice ids, allocating and committing a batch on first call."""
        existing = list(self.ledger.assignments_for_participant(participant_id))
        if existing:
            return existing

        all_ids = self.slices.list_all_ids()
        counts = self.ledger.counts_by_slice()
        batch = select_batch(all_ids, counts, self.batch_size, self.rng)

        slice_ids, created = self.ledger.insert_batch(participant_id, batch)
        if created:
            logger.info("Assigned %d slices to participant %s", len(slice_ids), participant_id)
        else:
            logger.info("Participant %s already had a batch; returning it", participant_id)
        return list(slice_ids)

    def get_assignment_for_participant(self, participant_id: str) -> dict:
        """
        Resolve the participant's batch to full slice records.

        Records are returned in assignment order. Ids no longer present in the
        catalog are dropped rather than failing the whole batch.
        """
        if not participant_id:
            raise ValueError("participant_id must be non-empty")

        slice_ids = self.resolve_slice_ids(participant_id)
        records = self.slices.get_by_ids(slice_ids)

        slices = []
        for slice_id in slice_ids:
            record = records.get(slice_id)
            if record is None:
                logger.warning("Assigned slice %s missing from catalog", slice_id)
                continue
            slices.append(record)

        return {
            "participant_id": participant_id,
            "slices": slices,
            "total": len(slices),
        }
