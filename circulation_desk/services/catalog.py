from typing import List, Optional

from sqlalchemy.orm import Session

from circulation_desk.core.database import transaction
from circulation_desk.core.errors import Conflict, InvalidState, NotFound
from circulation_desk.core.logging import get_logger
from circulation_desk.models.models import (OPEN_LOAN_STATUSES, CirculationRequest, Loan, Patron,
                                            RequestStatus, Reservation, ReservationStatus, Role, Title)
from circulation_desk.services.access import require_role
from circulation_desk.services.ledger import InventoryLedger

logger = get_logger("catalog")

BIBLIOGRAPHIC_FIELDS = ("isbn", "title", "author", "publisher", "year", "genre")
REQUIRED_FIELDS = ("title", "author")


class CatalogService:
    def __init__(self, db: Session):
        self.db = db
        self.ledger = InventoryLedger(db)

    def _check_isbn(self, isbn: Optional[str], title_id: Optional[int] = None) -> None:
        if not isbn:
            return
        existing = self.db.query(Title).filter(Title.isbn == isbn).first()
        if existing and existing.id != title_id:
            raise Conflict("ISBN already exists", details={"isbn": isbn, "title_id": existing.id})

    def get_title(self, title_id: int) -> Title:
        title = self.db.get(Title, title_id)
        if not title:
            raise NotFound("Title", title_id)
        return title

    def list_titles(self, q: Optional[str] = None, available_only: bool = False,
                    skip: int = 0, limit: int = 20) -> List[Title]:
        query = self.db.query(Title)
        if q:
            like_q = f"%{q}%"
            query = query.filter(
                (Title.title.ilike(like_q)) | (Title.author.ilike(like_q)) | (Title.isbn == q)
            )
        if available_only:
            query = query.filter(Title.available_copies > 0)
        return query.order_by(Title.title).offset(skip).limit(limit).all()

    def create_title(self, actor: Optional[Patron], data: dict) -> Title:
        require_role(actor, Role.LIBRARIAN)
        with transaction(self.db):
            self._check_isbn(data.get("isbn"))
            total = data.get("total_copies", 1)
            title = Title(
                **{k: data.get(k) for k in BIBLIOGRAPHIC_FIELDS},
                total_copies=total,
                available_copies=total,
            )
            self.db.add(title)
            self.db.flush()
        logger.info(f"Created title id={title.id} title={title.title}")
        return title

    def update_title(self, actor: Optional[Patron], title_id: int, data: dict) -> Title:
        """Edit bibliographic fields; a new total goes through the ledger.

        Only keys present in ``data`` change, so an explicit ``None`` clears an
        optional field. ``title`` and ``author`` cannot be cleared.
        """
        require_role(actor, Role.LIBRARIAN)
        for k in REQUIRED_FIELDS:
            if k in data and not data[k]:
                raise InvalidState(f"{k} cannot be empty", details={"field": k})
        with transaction(self.db):
            title = self.ledger.lock_title(title_id)
            if "isbn" in data:
                self._check_isbn(data["isbn"], title_id)
            if data.get("total_copies") is not None:
                self.ledger.set_total(title_id, data["total_copies"])
            for k in BIBLIOGRAPHIC_FIELDS:
                if k in data:
                    setattr(title, k, data[k])
            self.ledger.flush()
        logger.info(f"Updated title id={title.id}")
        return title

    def delete_title(self, actor: Optional[Patron], title_id: int) -> None:
        """Delete a title that nothing is waiting on.

        Open loans, pending or approved requests and pending reservations block
        the delete. Closed history rows stay, with ``title_id`` cleared.
        """
        require_role(actor, Role.ADMIN)
        with transaction(self.db):
            title = self.ledger.lock_title(title_id)
            active = {
                "open_loans": self._count(Loan, title_id, Loan.status.in_(OPEN_LOAN_STATUSES)),
                "open_requests": self._count(
                    CirculationRequest, title_id,
                    CirculationRequest.status.in_((RequestStatus.PENDING, RequestStatus.APPROVED)),
                ),
                "pending_reservations": self._count(
                    Reservation, title_id, Reservation.status == ReservationStatus.PENDING,
                ),
            }
            if any(active.values()):
                raise InvalidState("Cannot delete a title with active circulation",
                                   details={"title_id": title_id, **active})
            for model in (Loan, CirculationRequest, Reservation):
                self.db.query(model).filter(model.title_id == title_id).update(
                    {model.title_id: None}, synchronize_session="fetch"
                )
            self.db.delete(title)
        logger.info(f"Deleted title id={title_id}")

    def _count(self, model, title_id: int, *criteria) -> int:
        return self.db.query(model).filter(model.title_id == title_id, *criteria).count()
