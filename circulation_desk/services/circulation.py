"""Request, reservation, loan and fine transitions.

Each public method is one transaction: permission check, precondition
checks, then every row change, committed together. Events are published
only after the commit succeeds.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from circulation_desk.core.config import Settings, settings as default_settings
from circulation_desk.core.database import transaction
from circulation_desk.core.errors import AlreadySettled, InvalidState, NotFound
from circulation_desk.core.logging import get_logger
from circulation_desk.core.utils import utcnow
from circulation_desk.models.models import (CirculationRequest, Fine, Loan, LoanStatus, PaidStatus,
                                            Patron, PatronStatus, RequestStatus, Reservation,
                                            ReservationStatus, Role, Title)
from circulation_desk.services import fines as fine_calc
from circulation_desk.services.access import require_role, require_self_or_staff
from circulation_desk.services.events import DomainEvent, Publisher, log_event
from circulation_desk.services.ledger import InventoryLedger

logger = get_logger("circulation")

REVIEW_DECISIONS = (RequestStatus.APPROVED, RequestStatus.REJECTED)


@dataclass
class SweepReport:
    loans_marked_overdue: int = 0
    fines_assessed: int = 0
    total_unpaid: Decimal = Decimal("0.00")


class CirculationService:
    def __init__(
        self,
        db: Session,
        settings: Settings = default_settings,
        publish: Optional[Publisher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.publish = publish or log_event
        self.clock = clock
        self.ledger = InventoryLedger(db)
        self._pending_events: List[DomainEvent] = []

    # ---- helpers

    def _get(self, model, obj_id: int, name: str):
        obj = self.db.get(model, obj_id)
        if obj is None:
            raise NotFound(name, obj_id)
        return obj

    def _borrower(self, patron_id: int) -> Patron:
        patron = self._get(Patron, patron_id, "Patron")
        if patron.status != PatronStatus.ACTIVE:
            raise InvalidState(
                f"Patron {patron_id} is {patron.status.value} and may not borrow",
                details={"patron_id": patron_id, "status": patron.status.value},
            )
        return patron

    def _emit(self, name: str, **payload) -> None:
        self._pending_events.append(DomainEvent(name, payload, self.clock()))

    def _flush_events(self) -> None:
        events, self._pending_events = self._pending_events, []
        for event in events:
            self.publish(event)

    def _discard_events(self) -> None:
        self._pending_events = []

    def _run(self, work):
        try:
            with transaction(self.db):
                result = work()
        except Exception:
            self._discard_events()
            raise
        self._flush_events()
        return result

    def _open_loan(self, title_id: int, patron_id: int, actor: Patron, now: datetime,
                   loan_days: Optional[int] = None, notes: Optional[str] = None) -> Loan:
        self.ledger.decrement_available(title_id)
        days = self.settings.loan_period_days if loan_days is None else loan_days
        loan = Loan(
            title_id=title_id,
            patron_id=patron_id,
            issued_by=actor.id,
            issue_date=now,
            due_date=now + timedelta(days=days),
            status=LoanStatus.ISSUED,
            notes=notes,
        )
        self.db.add(loan)
        self.db.flush()
        self._emit("loan_issued", loan_id=loan.id, title_id=title_id, patron_id=patron_id,
                   due_date=loan.due_date.isoformat())
        return loan

    def _assess_fine(self, loan: Loan, settlement: datetime, now: datetime) -> tuple[Optional[Fine], bool]:
        """Create or refresh the fine for `loan`; one row per loan.

        Returns the fine (None when nothing is owed) and whether it changed.
        Paid fines are left untouched.
        """
        amount = fine_calc.assess(loan.due_date, settlement, self.settings.fine_rate_per_day)
        fine = self.db.query(Fine).filter(Fine.loan_id == loan.id).first()
        if fine is None:
            if amount <= 0:
                return None, False
            fine = Fine(loan_id=loan.id, amount=amount, paid_status=PaidStatus.UNPAID, assessed_date=now)
            self.db.add(fine)
        elif fine.paid_status == PaidStatus.PAID or Decimal(fine.amount) == amount:
            return fine, False
        else:
            fine.amount = amount
            fine.assessed_date = now
        self.db.flush()
        self._emit("fine_assessed", fine_id=fine.id, loan_id=loan.id, amount=str(amount))
        return fine, True

    # ---- requests

    def submit_request(self, actor: Optional[Patron], title_id: int, patron_id: Optional[int] = None,
                       notes: Optional[str] = None) -> CirculationRequest:
        patron_id = actor.id if patron_id is None and actor is not None else patron_id
        require_self_or_staff(actor, patron_id)

        def work():
            self._get(Title, title_id, "Title")
            self._borrower(patron_id)
            request = CirculationRequest(
                title_id=title_id,
                patron_id=patron_id,
                status=RequestStatus.PENDING,
                requested_at=self.clock(),
                notes=notes,
            )
            self.db.add(request)
            self.db.flush()
            self._emit("request_submitted", request_id=request.id, title_id=title_id, patron_id=patron_id)
            logger.info(f"patron {patron_id} requested title {title_id} (request {request.id})")
            return request

        return self._run(work)

    def review_request(self, request_id: int, reviewer: Optional[Patron], decision,
                       notes: Optional[str] = None) -> CirculationRequest:
        require_role(reviewer, Role.LIBRARIAN)
        decision = RequestStatus(decision)
        if decision not in REVIEW_DECISIONS:
            raise InvalidState(f"Cannot review a request as {decision.value}",
                               details={"decision": decision.value})

        def work():
            request = self._get(CirculationRequest, request_id, "CirculationRequest")
            if request.status != RequestStatus.PENDING:
                raise InvalidState(
                    f"Request {request_id} is already {request.status.value}",
                    details={"request_id": request_id, "status": request.status.value},
                )
            request.status = decision
            request.reviewed_by = reviewer.id
            request.reviewed_at = self.clock()
            request.review_notes = notes
            self.db.flush()
            self._emit(f"request_{decision.value}", request_id=request.id, reviewer_id=reviewer.id)
            logger.info(f"request {request.id} {decision.value} by {reviewer.id}")
            return request

        return self._run(work)

    def fulfill_request(self, request_id: int, actor: Optional[Patron]) -> Loan:
        require_role(actor, Role.LIBRARIAN)

        def work():
            request = self._get(CirculationRequest, request_id, "CirculationRequest")
            if request.status != RequestStatus.APPROVED:
                raise InvalidState(
                    f"Request {request_id} is {request.status.value}, only approved requests can be fulfilled",
                    details={"request_id": request_id, "status": request.status.value},
                )
            self._borrower(request.patron_id)
            now = self.clock()
            loan = self._open_loan(request.title_id, request.patron_id, actor, now)
            request.status = RequestStatus.FULFILLED
            request.fulfilled_at = now
            request.loan_id = loan.id
            self.db.flush()
            self._emit("request_fulfilled", request_id=request.id, loan_id=loan.id)
            logger.info(f"request {request.id} fulfilled as loan {loan.id}")
            return loan

        return self._run(work)

    # ---- reservations

    def create_reservation(self, actor: Optional[Patron], title_id: int,
                           patron_id: Optional[int] = None) -> Reservation:
        patron_id = actor.id if patron_id is None and actor is not None else patron_id
        require_self_or_staff(actor, patron_id)

        def work():
            title = self._get(Title, title_id, "Title")
            self._borrower(patron_id)
            if self.settings.reserve_only_when_unavailable and title.available_copies > 0:
                raise InvalidState(
                    f"Title {title_id} has copies available; request it instead of reserving",
                    details={"title_id": title_id, "available_copies": title.available_copies},
                )
            reservation = Reservation(
                title_id=title_id,
                patron_id=patron_id,
                status=ReservationStatus.PENDING,
                reserved_at=self.clock(),
            )
            self.db.add(reservation)
            self.db.flush()
            self._emit("reservation_created", reservation_id=reservation.id, title_id=title_id,
                       patron_id=patron_id)
            logger.info(f"patron {patron_id} reserved title {title_id} (reservation {reservation.id})")
            return reservation

        return self._run(work)

    def _pending_reservation(self, reservation_id: int) -> Reservation:
        reservation = self._get(Reservation, reservation_id, "Reservation")
        if reservation.status != ReservationStatus.PENDING:
            raise InvalidState(
                f"Reservation {reservation_id} is already {reservation.status.value}",
                details={"reservation_id": reservation_id, "status": reservation.status.value},
            )
        return reservation

    def fulfill_reservation(self, reservation_id: int, actor: Optional[Patron],
                            notes: Optional[str] = None) -> Loan:
        require_role(actor, Role.LIBRARIAN)

        def work():
            reservation = self._pending_reservation(reservation_id)
            self._borrower(reservation.patron_id)
            now = self.clock()
            loan = self._open_loan(reservation.title_id, reservation.patron_id, actor, now, notes=notes)
            reservation.status = ReservationStatus.FULFILLED
            reservation.fulfilled_at = now
            reservation.fulfilled_by = actor.id
            reservation.notes = notes
            reservation.loan_id = loan.id
            self.db.flush()
            self._emit("reservation_fulfilled", reservation_id=reservation.id, loan_id=loan.id)
            logger.info(f"reservation {reservation.id} fulfilled as loan {loan.id}")
            return loan

        return self._run(work)

    def cancel_reservation(self, reservation_id: int, actor: Optional[Patron],
                           notes: Optional[str] = None) -> Reservation:
        require_role(actor, Role.LIBRARIAN)

        def work():
            reservation = self._pending_reservation(reservation_id)
            reservation.status = ReservationStatus.CANCELLED
            reservation.cancelled_at = self.clock()
            reservation.notes = notes
            self.db.flush()
            self._emit("reservation_cancelled", reservation_id=reservation.id)
            logger.info(f"reservation {reservation.id} cancelled by {actor.id}")
            return reservation

        return self._run(work)

    # ---- loans

    def issue_loan(self, actor: Optional[Patron], patron_id: int, title_id: int,
                   loan_days: Optional[int] = None, notes: Optional[str] = None) -> Loan:
        """Issue a copy over the desk, without a prior request."""
        require_role(actor, Role.LIBRARIAN)
        if loan_days is not None and loan_days < 1:
            raise InvalidState("loan_days must be at least 1", details={"loan_days": loan_days})

        def work():
            self._borrower(patron_id)
            loan = self._open_loan(title_id, patron_id, actor, self.clock(), loan_days=loan_days, notes=notes)
            logger.info(f"loan {loan.id} issued to patron {patron_id} by {actor.id}")
            return loan

        return self._run(work)

    def return_loan(self, loan_id: int, actor: Optional[Patron], notes: Optional[str] = None) -> Loan:
        require_role(actor, Role.LIBRARIAN)

        def work():
            loan = self._get(Loan, loan_id, "Loan")
            if loan.status == LoanStatus.RETURNED:
                raise AlreadySettled(f"Loan {loan_id} was already returned",
                                     details={"loan_id": loan_id})
            now = self.clock()
            loan.return_date = now
            loan.status = LoanStatus.RETURNED
            if notes is not None:
                loan.notes = notes
            title, inconsistent = self.ledger.increment_available(loan.title_id)
            if inconsistent:
                self._emit("inventory_inconsistency", title_id=title.id, total_copies=title.total_copies)
            if now > loan.due_date:
                self._assess_fine(loan, now, now)
            self.db.flush()
            self._emit("loan_returned", loan_id=loan.id, title_id=loan.title_id)
            logger.info(f"loan {loan.id} returned")
            return loan

        return self._run(work)

    def sweep_overdue(self, actor: Optional[Patron]) -> SweepReport:
        """Mark late loans overdue and bring their fines up to date.

        Safe to repeat: fines are keyed by loan and recomputed, never added.
        """
        require_role(actor, Role.LIBRARIAN)

        def work():
            now = self.clock()
            report = SweepReport()
            late = (
                self.db.query(Loan)
                .filter(Loan.status == LoanStatus.ISSUED, Loan.due_date < now)
                .with_for_update()
                .all()
            )
            for loan in late:
                loan.status = LoanStatus.OVERDUE
                report.loans_marked_overdue += 1
                self._emit("loan_overdue", loan_id=loan.id, patron_id=loan.patron_id)
            self.db.flush()
            for loan in self.db.query(Loan).filter(Loan.status == LoanStatus.OVERDUE).all():
                _, changed = self._assess_fine(loan, now, now)
                if changed:
                    report.fines_assessed += 1
            report.total_unpaid = self._unpaid_total()
            logger.info(f"overdue sweep: {report.loans_marked_overdue} loans marked overdue, "
                        f"{report.fines_assessed} fines assessed")
            return report

        return self._run(work)

    def _unpaid_total(self) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(Fine.amount), 0))
            .filter(Fine.paid_status == PaidStatus.UNPAID)
            .scalar()
        )
        return Decimal(total).quantize(fine_calc.CENTS)

    # ---- fines

    def pay_fine(self, fine_id: int, actor: Optional[Patron]) -> Fine:
        require_role(actor, Role.LIBRARIAN)

        def work():
            fine = self._get(Fine, fine_id, "Fine")
            if fine.paid_status == PaidStatus.PAID:
                raise AlreadySettled(f"Fine {fine_id} is already paid", details={"fine_id": fine_id})
            fine.paid_status = PaidStatus.PAID
            fine.paid_at = self.clock()
            self.db.flush()
            self._emit("fine_paid", fine_id=fine.id, loan_id=fine.loan_id, amount=str(fine.amount))
            logger.info(f"fine {fine.id} paid")
            return fine

        return self._run(work)
