"""Inventory ledger: the only code that touches Title copy counters.

Titles are read with ``SELECT ... FOR UPDATE`` and carry a version column,
so two transactions racing for the last copy cannot both decrement it. On
backends without row locks (SQLite) the version check turns the loser's
flush into a ``ConcurrentUpdate``.
"""
import warnings

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from circulation_desk.core.errors import (ConcurrentUpdate, InvalidState, InventoryInconsistency,
                                          NotFound, OutOfStock)
from circulation_desk.core.logging import get_logger
from circulation_desk.models.models import Title

logger = get_logger("ledger")


class InventoryLedger:
    def __init__(self, db: Session):
        self.db = db

    def lock_title(self, title_id: int) -> Title:
        title = self.db.query(Title).filter(Title.id == title_id).with_for_update().populate_existing().first()
        if not title:
            raise NotFound("Title", title_id)
        return title

    def available(self, title_id: int) -> int:
        return self.lock_title(title_id).available_copies

    def decrement_available(self, title_id: int) -> Title:
        title = self.lock_title(title_id)
        if title.available_copies <= 0:
            raise OutOfStock(title_id)
        title.available_copies -= 1
        self.flush()
        return title

    def increment_available(self, title_id: int) -> tuple[Title, bool]:
        """Put one copy back on the shelf.

        Returns the title and whether the counter was already at the total,
        in which case the counter stays capped and a warning is raised.
        """
        title = self.lock_title(title_id)
        inconsistent = title.available_copies >= title.total_copies
        if inconsistent:
            logger.warning(
                f"title {title.id} already has {title.available_copies}/{title.total_copies} "
                "copies available; capping return"
            )
            warnings.warn(
                f"Title {title.id} returned with all {title.total_copies} copies already available",
                InventoryInconsistency,
                stacklevel=2,
            )
            title.available_copies = title.total_copies
        else:
            title.available_copies += 1
        self.flush()
        return title, inconsistent

    def set_total(self, title_id: int, new_total: int) -> Title:
        title = self.lock_title(title_id)
        if new_total < 0:
            raise InvalidState("total_copies must be >= 0", details={"total_copies": new_total})
        if new_total < title.available_copies:
            raise InvalidState(
                f"Title {title_id} has {title.available_copies} copies available; "
                f"total cannot drop to {new_total}",
                details={"available_copies": title.available_copies, "total_copies": new_total},
            )
        title.total_copies = new_total
        self.flush()
        return title

    def flush(self) -> None:
        try:
            self.db.flush()
        except StaleDataError as exc:
            raise ConcurrentUpdate() from exc
