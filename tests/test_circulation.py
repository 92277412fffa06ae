import random
from datetime import timedelta
from decimal import Decimal

import pytest

from circulation_desk.core.errors import (AlreadySettled, InvalidState, InventoryInconsistency, NotFound,
                                          OutOfStock, PermissionDenied)
from circulation_desk.models.models import (CirculationRequest, Fine, Loan, LoanStatus, PaidStatus,
                                            PatronStatus, RequestStatus, Reservation, ReservationStatus, Role,
                                            Title)


def _approved_request(circulation, librarian, patron, title):
    request = circulation.submit_request(patron, title.id)
    return circulation.review_request(request.id, librarian, "approved")


def _available(db, title_id):
    db.expire_all()
    return db.get(Title, title_id).available_copies


# ---- requests

def test_submit_request_is_pending_even_without_stock(circulation, member, make_title, events):
    title = make_title(total=1, available=0)
    request = circulation.submit_request(member, title.id, notes="for my thesis")
    assert request.status == RequestStatus.PENDING
    assert request.patron_id == member.id
    assert request.notes == "for my thesis"
    assert events[-1].name == "request_submitted"


def test_member_cannot_request_for_someone_else(circulation, member, make_patron, make_title):
    other = make_patron()
    with pytest.raises(PermissionDenied):
        circulation.submit_request(member, make_title().id, patron_id=other.id)


def test_suspended_member_cannot_transact(circulation, make_patron, make_title):
    suspended = make_patron(status=PatronStatus.SUSPENDED)
    with pytest.raises(PermissionDenied):
        circulation.submit_request(suspended, make_title().id)


def test_staff_can_request_on_behalf_of_member(circulation, librarian, member, make_title):
    request = circulation.submit_request(librarian, make_title().id, patron_id=member.id)
    assert request.patron_id == member.id


def test_request_for_missing_title(circulation, member):
    with pytest.raises(NotFound):
        circulation.submit_request(member, 404)


def test_review_stamps_reviewer_and_notes(circulation, librarian, member, make_title, clock):
    request = circulation.submit_request(member, make_title().id)
    clock.advance(hours=2)
    reviewed = circulation.review_request(request.id, librarian, "rejected", notes="lost copy")
    assert reviewed.status == RequestStatus.REJECTED
    assert reviewed.reviewed_by == librarian.id
    assert reviewed.reviewed_at == clock.now
    assert reviewed.review_notes == "lost copy"


def test_review_twice_is_invalid_and_keeps_first_review(db, circulation, librarian, make_patron,
                                                        member, make_title, clock):
    request = _approved_request(circulation, librarian, member, make_title())
    first_review_at = request.reviewed_at
    other_librarian = make_patron(Role.HEAD_LIBRARIAN)
    clock.advance(days=1)
    with pytest.raises(InvalidState):
        circulation.review_request(request.id, other_librarian, "rejected", notes="changed mind")
    db.expire_all()
    stored = db.get(CirculationRequest, request.id)
    assert stored.status == RequestStatus.APPROVED
    assert stored.reviewed_by == librarian.id
    assert stored.reviewed_at == first_review_at
    assert stored.review_notes is None


def test_member_cannot_review_regardless_of_state(circulation, member, make_title, librarian):
    request = circulation.submit_request(member, make_title().id)
    with pytest.raises(PermissionDenied):
        circulation.review_request(request.id, member, "approved")
    circulation.review_request(request.id, librarian, "approved")
    with pytest.raises(PermissionDenied):
        circulation.review_request(request.id, member, "approved")
    with pytest.raises(PermissionDenied):
        circulation.review_request(9999, member, "approved")


def test_review_decision_must_be_final(circulation, librarian, member, make_title):
    request = circulation.submit_request(member, make_title().id)
    with pytest.raises(InvalidState):
        circulation.review_request(request.id, librarian, "fulfilled")


def test_fulfill_creates_loan_and_decrements(db, circulation, librarian, member, make_title, clock, events):
    title = make_title(total=2)
    request = _approved_request(circulation, librarian, member, title)
    loan = circulation.fulfill_request(request.id, librarian)

    assert loan.status == LoanStatus.ISSUED
    assert loan.issued_by == librarian.id
    assert loan.issue_date == clock.now
    assert loan.due_date == clock.now + timedelta(days=14)
    assert _available(db, title.id) == 1
    stored = db.get(CirculationRequest, request.id)
    assert stored.status == RequestStatus.FULFILLED
    assert stored.loan_id == loan.id
    assert [e.name for e in events[-2:]] == ["loan_issued", "request_fulfilled"]


def test_fulfill_requires_approval(circulation, librarian, member, make_title):
    request = circulation.submit_request(member, make_title().id)
    with pytest.raises(InvalidState):
        circulation.fulfill_request(request.id, librarian)


def test_fulfill_out_of_stock_changes_nothing(db, circulation, librarian, member, make_title, events):
    title = make_title(total=1, available=0)
    request = _approved_request(circulation, librarian, member, title)
    published = len(events)
    with pytest.raises(OutOfStock):
        circulation.fulfill_request(request.id, librarian)
    assert _available(db, title.id) == 0
    assert db.get(CirculationRequest, request.id).status == RequestStatus.APPROVED
    assert db.query(Loan).count() == 0
    assert len(events) == published


def test_fulfill_for_suspended_borrower_is_refused(db, circulation, librarian, member, make_title):
    title = make_title()
    request = _approved_request(circulation, librarian, member, title)
    member.status = PatronStatus.SUSPENDED
    db.commit()
    with pytest.raises(InvalidState):
        circulation.fulfill_request(request.id, librarian)
    assert _available(db, title.id) == 2


# ---- reservations

def test_reservation_lifecycle(db, circulation, librarian, member, make_title):
    title = make_title(total=1, available=0)
    reservation = circulation.create_reservation(member, title.id)
    assert reservation.status == ReservationStatus.PENDING

    with pytest.raises(OutOfStock):
        circulation.fulfill_reservation(reservation.id, librarian)

    title = db.get(Title, title.id)
    title.available_copies = 1
    db.commit()

    loan = circulation.fulfill_reservation(reservation.id, librarian, notes="picked up")
    db.expire_all()
    stored = db.get(Reservation, reservation.id)
    assert stored.status == ReservationStatus.FULFILLED
    assert stored.fulfilled_by == librarian.id
    assert stored.loan_id == loan.id
    assert stored.notes == "picked up"
    assert _available(db, title.id) == 0


def test_reservation_allowed_while_copies_available(circulation, member, make_title):
    reservation = circulation.create_reservation(member, make_title(total=3).id)
    assert reservation.status == ReservationStatus.PENDING


def test_reservation_can_be_limited_to_unavailable_titles(db, member, make_title, settings, clock):
    from circulation_desk.services.circulation import CirculationService

    settings.reserve_only_when_unavailable = True
    strict = CirculationService(db, settings=settings, publish=lambda e: None, clock=clock)
    with pytest.raises(InvalidState):
        strict.create_reservation(member, make_title(total=1).id)
    assert strict.create_reservation(member, make_title(total=1, available=0).id).status == ReservationStatus.PENDING


def test_cancel_reservation_has_no_inventory_effect(db, circulation, librarian, member, make_title):
    title = make_title(total=1, available=0)
    reservation = circulation.create_reservation(member, title.id)
    cancelled = circulation.cancel_reservation(reservation.id, librarian, notes="patron left town")
    assert cancelled.status == ReservationStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert _available(db, title.id) == 0
    with pytest.raises(InvalidState):
        circulation.fulfill_reservation(reservation.id, librarian)
    with pytest.raises(InvalidState):
        circulation.cancel_reservation(reservation.id, librarian)


def test_member_cannot_manage_reservations(circulation, member, make_title):
    reservation = circulation.create_reservation(member, make_title().id)
    with pytest.raises(PermissionDenied):
        circulation.cancel_reservation(reservation.id, member)
    with pytest.raises(PermissionDenied):
        circulation.fulfill_reservation(reservation.id, member)


# ---- loans and fines

def test_issue_over_the_desk_with_custom_period(db, circulation, librarian, member, make_title, clock):
    title = make_title(total=1)
    loan = circulation.issue_loan(librarian, member.id, title.id, loan_days=7)
    assert loan.due_date == clock.now + timedelta(days=7)
    assert _available(db, title.id) == 0
    with pytest.raises(OutOfStock):
        circulation.issue_loan(librarian, member.id, title.id)


def test_issue_rejects_non_positive_period(circulation, librarian, member, make_title):
    with pytest.raises(InvalidState):
        circulation.issue_loan(librarian, member.id, make_title().id, loan_days=0)


def test_on_time_return_has_no_fine(db, circulation, librarian, member, make_title, clock):
    title = make_title()
    loan = circulation.issue_loan(librarian, member.id, title.id)
    clock.advance(days=14)
    returned = circulation.return_loan(loan.id, librarian)
    assert returned.status == LoanStatus.RETURNED
    assert returned.return_date == clock.now
    assert db.query(Fine).count() == 0
    assert _available(db, title.id) == 2


def test_late_return_assesses_fine(db, circulation, librarian, member, make_title, clock, events):
    loan = circulation.issue_loan(librarian, member.id, make_title().id)
    clock.advance(days=14 + 5)
    circulation.return_loan(loan.id, librarian, notes="cover torn")
    fine = db.query(Fine).filter(Fine.loan_id == loan.id).one()
    assert fine.amount == Decimal("50.00")
    assert fine.paid_status == PaidStatus.UNPAID
    assert "fine_assessed" in [e.name for e in events]
    assert db.get(Loan, loan.id).notes == "cover torn"


def test_returning_twice_is_already_settled(db, circulation, librarian, member, make_title):
    title = make_title()
    loan = circulation.issue_loan(librarian, member.id, title.id)
    circulation.return_loan(loan.id, librarian)
    with pytest.raises(AlreadySettled):
        circulation.return_loan(loan.id, librarian)
    assert _available(db, title.id) == 2


def test_return_when_shelf_is_full_reports_inconsistency(db, circulation, librarian, member, make_title, events):
    title = make_title(total=1)
    loan = circulation.issue_loan(librarian, member.id, title.id)
    # someone edited the counter by hand while the copy was out
    stored = db.get(Title, title.id)
    stored.available_copies = 1
    db.commit()
    with pytest.warns(InventoryInconsistency):
        circulation.return_loan(loan.id, librarian)
    assert _available(db, title.id) == 1
    assert "inventory_inconsistency" in [e.name for e in events]


def test_return_then_reissue_round_trip(db, circulation, librarian, member, make_title):
    title = make_title(total=3)
    loan = circulation.issue_loan(librarian, member.id, title.id)
    circulation.return_loan(loan.id, librarian)
    assert _available(db, title.id) == 3
    request = _approved_request(circulation, librarian, member, title)
    circulation.fulfill_request(request.id, librarian)
    assert _available(db, title.id) == 2


def test_sweep_marks_overdue_and_is_idempotent(db, circulation, librarian, member, make_title, clock):
    title = make_title(total=2)
    late = circulation.issue_loan(librarian, member.id, title.id)
    clock.advance(days=10)
    on_time = circulation.issue_loan(librarian, member.id, title.id)
    clock.advance(days=7)  # late is 3 days past due, on_time still has a week

    first = circulation.sweep_overdue(librarian)
    assert first.loans_marked_overdue == 1
    assert first.fines_assessed == 1
    assert first.total_unpaid == Decimal("30.00")

    second = circulation.sweep_overdue(librarian)
    assert second.loans_marked_overdue == 0
    assert second.fines_assessed == 0
    assert second.total_unpaid == Decimal("30.00")

    db.expire_all()
    assert db.get(Loan, late.id).status == LoanStatus.OVERDUE
    assert db.get(Loan, on_time.id).status == LoanStatus.ISSUED
    assert db.query(Fine).count() == 1


def test_sweep_updates_growing_fine_and_return_settles_it(db, circulation, librarian, member, make_title, clock):
    loan = circulation.issue_loan(librarian, member.id, make_title().id)
    clock.advance(days=16)
    circulation.sweep_overdue(librarian)
    clock.advance(days=2)
    report = circulation.sweep_overdue(librarian)
    assert report.fines_assessed == 1
    assert db.query(Fine).one().amount == Decimal("40.00")

    clock.advance(days=1)
    returned = circulation.return_loan(loan.id, librarian)
    assert returned.status == LoanStatus.RETURNED
    db.expire_all()
    fines = db.query(Fine).all()
    assert len(fines) == 1
    assert fines[0].amount == Decimal("50.00")


def test_sweep_requires_staff(circulation, member):
    with pytest.raises(PermissionDenied):
        circulation.sweep_overdue(member)


def test_pay_fine(db, circulation, librarian, member, make_title, clock):
    loan = circulation.issue_loan(librarian, member.id, make_title().id)
    clock.advance(days=15)
    circulation.return_loan(loan.id, librarian)
    fine = db.query(Fine).one()
    paid = circulation.pay_fine(fine.id, librarian)
    assert paid.paid_status == PaidStatus.PAID
    assert paid.paid_at == clock.now
    with pytest.raises(AlreadySettled):
        circulation.pay_fine(fine.id, librarian)


def test_paid_fine_is_not_reassessed(db, circulation, librarian, member, make_title, clock):
    loan = circulation.issue_loan(librarian, member.id, make_title().id)
    clock.advance(days=15)
    circulation.sweep_overdue(librarian)
    fine = db.query(Fine).one()
    circulation.pay_fine(fine.id, librarian)
    clock.advance(days=3)
    circulation.sweep_overdue(librarian)
    circulation.return_loan(loan.id, librarian)
    db.expire_all()
    assert db.query(Fine).one().amount == Decimal("10.00")


# ---- end to end

def test_two_copy_scenario(db, circulation, librarian, make_patron, make_title, clock):
    title = make_title(total=2)
    alice, bob, carol = make_patron(), make_patron(), make_patron()

    loan_a = circulation.fulfill_request(_approved_request(circulation, librarian, alice, title).id, librarian)
    assert _available(db, title.id) == 1
    assert loan_a.due_date == loan_a.issue_date + timedelta(days=14)

    circulation.fulfill_request(_approved_request(circulation, librarian, bob, title).id, librarian)
    assert _available(db, title.id) == 0

    request_c = _approved_request(circulation, librarian, carol, title)
    with pytest.raises(OutOfStock):
        circulation.fulfill_request(request_c.id, librarian)
    assert _available(db, title.id) == 0

    clock.now = loan_a.due_date + timedelta(days=3)
    circulation.return_loan(loan_a.id, librarian)
    fine = db.query(Fine).filter(Fine.loan_id == loan_a.id).one()
    assert fine.amount == Decimal("30.00")
    assert fine.paid_status == PaidStatus.UNPAID
    assert _available(db, title.id) == 1

    loan_c = circulation.fulfill_request(request_c.id, librarian)
    assert loan_c.patron_id == carol.id
    assert _available(db, title.id) == 0


@pytest.mark.parametrize("seed", range(5))
def test_counters_stay_in_bounds_under_random_traffic(db, circulation, librarian, member, make_title, clock, seed):
    rng = random.Random(seed)
    title = make_title(total=3)
    open_loans = []
    for _ in range(60):
        clock.advance(hours=rng.randint(1, 72))
        action = rng.choice(["request", "issue", "return", "sweep"])
        try:
            if action == "request":
                request = _approved_request(circulation, librarian, member, title)
                open_loans.append(circulation.fulfill_request(request.id, librarian).id)
            elif action == "issue":
                open_loans.append(circulation.issue_loan(librarian, member.id, title.id).id)
            elif action == "return" and open_loans:
                circulation.return_loan(open_loans.pop(rng.randrange(len(open_loans))), librarian)
            else:
                circulation.sweep_overdue(librarian)
        except OutOfStock:
            assert len(open_loans) == 3
        db.expire_all()
        stored = db.get(Title, title.id)
        assert 0 <= stored.available_copies <= stored.total_copies
        assert stored.available_copies == stored.total_copies - len(open_loans)
