"""Committing holder sets to the lock key with compare-and-swap."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from .state import LockDocument

if TYPE_CHECKING:
    from .store import CoordinationStore

logger = logging.getLogger(__name__)


class LockWriter:
    """Writes the lock document, but only when the holder set changed.

    A rejected compare-and-swap means another participant wrote first. It is
    not an error: the next cycle re-reads and tries again.
    """

    def __init__(self, store: CoordinationStore, *, lock_key: str) -> None:
        self._store = store
        self.lock_key = lock_key

    def write(
        self,
        limit: int,
        holders: Iterable[str],
        prior: LockDocument | None,
        modify_index: int,
    ) -> bool:
        """Commit ``holders`` if the lock key is still at ``modify_index``.

        Args:
            limit: Limit recorded in the document
            holders: Holder set to commit
            prior: Document the holder set was computed from
            modify_index: Modify index ``prior`` was read at, 0 if absent

        Returns:
            True if the document was written or did not need to be
        """
        document = LockDocument.build(limit, holders)
        if prior is not None and prior.holders == document.holders:
            logger.info("Holders are unchanged, not updating")
            return True

        logger.debug("Holders are: %s", ",".join(sorted(document.holders)))
        written = self._store.put(self.lock_key, document.encode(), cas=modify_index)
        if not written:
            logger.debug(
                "Lock %s changed since index %d, write rejected",
                self.lock_key,
                modify_index,
            )
        return written
