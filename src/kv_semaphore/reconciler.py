"""Computing the next holder set from a snapshot.

Holders whose contender key has disappeared are pruned first, then this
participant is admitted if there is room. Nothing here touches the store.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .state import SemaphoreSnapshot


class AdmissionStatus(enum.Enum):
    """Where a participant stands after a reconciliation."""

    #: Already a holder, membership kept
    HELD = "held"
    #: Newly admitted into a free slot
    ADMITTED = "admitted"
    #: Alive but every slot is taken
    WAITING = "waiting"
    #: Own contender key is gone, the participant cannot hold the semaphore
    LOST = "lost"

    @property
    def holding(self) -> bool:
        return self in (AdmissionStatus.HELD, AdmissionStatus.ADMITTED)


@dataclass(frozen=True)
class Reconciliation:
    """Outcome of one reconciliation.

    Attributes:
        holders: Next holder set, sorted and deduplicated
        status: Where ``self_id`` stands in ``holders``
        reset: True when no holder survived pruning
    """

    holders: tuple[str, ...]
    status: AdmissionStatus
    reset: bool = False


def prune(snapshot: SemaphoreSnapshot) -> set[str]:
    """Return the document's holders that still have a live contender key."""
    if snapshot.document is None:
        return set()
    return set(snapshot.document.holders) & snapshot.contenders


def reconcile(snapshot: SemaphoreSnapshot, self_id: str, limit: int) -> Reconciliation:
    """Compute the holder set that admits ``self_id`` if a slot is free.

    ``self_id`` is only admitted while its own contender key is live, so the
    result never names a dead participant.
    """
    holders = prune(snapshot)
    reset = not holders

    if self_id in holders:
        status = AdmissionStatus.HELD
    elif self_id not in snapshot.contenders:
        status = AdmissionStatus.LOST
    elif len(holders) < limit:
        holders.add(self_id)
        status = AdmissionStatus.ADMITTED
    else:
        status = AdmissionStatus.WAITING

    return Reconciliation(holders=tuple(sorted(holders)), status=status, reset=reset)


def remove_holder(snapshot: SemaphoreSnapshot, self_id: str) -> tuple[str, ...]:
    """Return the pruned holder set without ``self_id``."""
    holders = prune(snapshot)
    holders.discard(self_id)
    return tuple(sorted(holders))
