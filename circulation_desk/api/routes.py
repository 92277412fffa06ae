from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import func
from sqlalchemy.orm import Session

from circulation_desk.api.deps import get_actor, get_circulation
from circulation_desk.core.database import get_db
from circulation_desk.core.utils import utcnow
from circulation_desk.models import models
from circulation_desk.models.models import Role
from circulation_desk.schemas import schemas
from circulation_desk.services.access import is_staff, require_role, require_self_or_staff
from circulation_desk.services.catalog import CatalogService
from circulation_desk.services.circulation import CirculationService
from circulation_desk.services.patrons import PatronService

router = APIRouter()


def _own_rows(query, model, actor: models.Patron):
    """Staff see every row; members only their own."""
    require_role(actor, Role.MEMBER)
    if not is_staff(actor):
        query = query.filter(model.patron_id == actor.id)
    return query


# ---- titles

@router.post("/titles/", response_model=schemas.TitleOut, status_code=201)
def create_title(title_in: schemas.TitleCreate, actor: models.Patron = Depends(get_actor),
                 db: Session = Depends(get_db)):
    return CatalogService(db).create_title(actor, title_in.model_dump())


@router.get("/titles/", response_model=List[schemas.TitleOut])
def list_titles(q: Optional[str] = Query(None, description="search title, author or isbn"),
                available: bool = False, skip: int = 0, limit: int = 20,
                db: Session = Depends(get_db)):
    return CatalogService(db).list_titles(q, available_only=available, skip=skip, limit=limit)


@router.get("/titles/{title_id}", response_model=schemas.TitleOut)
def read_title(title_id: int, db: Session = Depends(get_db)):
    return CatalogService(db).get_title(title_id)


@router.put("/titles/{title_id}", response_model=schemas.TitleOut)
def update_title(title_id: int, title_upd: schemas.TitleUpdate, actor: models.Patron = Depends(get_actor),
                 db: Session = Depends(get_db)):
    return CatalogService(db).update_title(actor, title_id, title_upd.model_dump(exclude_unset=True))


@router.delete("/titles/{title_id}", status_code=204)
def delete_title(title_id: int, actor: models.Patron = Depends(get_actor), db: Session = Depends(get_db)):
    CatalogService(db).delete_title(actor, title_id)
    return Response(status_code=204)


# ---- patrons

@router.post("/patrons/", response_model=schemas.PatronOut, status_code=201)
def register_patron(patron_in: schemas.PatronCreate, db: Session = Depends(get_db)):
    return PatronService(db).register(patron_in.full_name, patron_in.email, patron_in.phone,
                                      patron_in.membership_type)


@router.get("/patrons/me", response_model=schemas.PatronOut)
def read_me(actor: models.Patron = Depends(get_actor)):
    return actor


@router.get("/patrons/", response_model=List[schemas.PatronOut])
def list_patrons(status: Optional[models.PatronStatus] = None, skip: int = 0, limit: int = 50,
                 actor: models.Patron = Depends(get_actor), db: Session = Depends(get_db)):
    require_role(actor, Role.LIBRARIAN)
    return PatronService(db).list(status, skip=skip, limit=limit)


@router.get("/patrons/{patron_id}", response_model=schemas.PatronOut)
def read_patron(patron_id: int, actor: models.Patron = Depends(get_actor), db: Session = Depends(get_db)):
    require_self_or_staff(actor, patron_id)
    return PatronService(db).get(patron_id)


@router.post("/patrons/{patron_id}/approve", response_model=schemas.PatronOut)
def approve_patron(patron_id: int, actor: models.Patron = Depends(get_actor), db: Session = Depends(get_db)):
    return PatronService(db).approve(actor, patron_id)


@router.post("/patrons/{patron_id}/suspend", response_model=schemas.PatronOut)
def suspend_patron(patron_id: int, actor: models.Patron = Depends(get_actor), db: Session = Depends(get_db)):
    return PatronService(db).suspend(actor, patron_id)


@router.post("/patrons/{patron_id}/reactivate", response_model=schemas.PatronOut)
def reactivate_patron(patron_id: int, actor: models.Patron = Depends(get_actor),
                      db: Session = Depends(get_db)):
    return PatronService(db).reactivate(actor, patron_id)


@router.put("/patrons/{patron_id}/role", response_model=schemas.PatronOut)
def change_role(patron_id: int, body: schemas.RoleChange, actor: models.Patron = Depends(get_actor),
                db: Session = Depends(get_db)):
    return PatronService(db).change_role(actor, patron_id, body.role)


# ---- circulation requests

@router.post("/requests/", response_model=schemas.RequestOut, status_code=201)
def submit_request(body: schemas.RequestCreate, actor: models.Patron = Depends(get_actor),
                   svc: CirculationService = Depends(get_circulation)):
    return svc.submit_request(actor, body.title_id, patron_id=body.patron_id, notes=body.notes)


@router.get("/requests/", response_model=List[schemas.RequestOut])
def list_requests(status: Optional[models.RequestStatus] = None, skip: int = 0, limit: int = 50,
                  actor: models.Patron = Depends(get_actor), db: Session = Depends(get_db)):
    query = _own_rows(db.query(models.CirculationRequest), models.CirculationRequest, actor)
    if status is not None:
        query = query.filter(models.CirculationRequest.status == status)
    return query.order_by(models.CirculationRequest.requested_at.desc()).offset(skip).limit(limit).all()


@router.post("/requests/{request_id}/review", response_model=schemas.RequestOut)
def review_request(request_id: int, body: schemas.RequestReview, actor: models.Patron = Depends(get_actor),
                   svc: CirculationService = Depends(get_circulation)):
    return svc.review_request(request_id, actor, body.decision, body.notes)


@router.post("/requests/{request_id}/fulfill", response_model=schemas.LoanOut)
def fulfill_request(request_id: int, actor: models.Patron = Depends(get_actor),
                    svc: CirculationService = Depends(get_circulation)):
    return svc.fulfill_request(request_id, actor)


# ---- reservations

@router.post("/reservations/", response_model=schemas.ReservationOut, status_code=201)
def create_reservation(body: schemas.ReservationCreate, actor: models.Patron = Depends(get_actor),
                       svc: CirculationService = Depends(get_circulation)):
    return svc.create_reservation(actor, body.title_id, patron_id=body.patron_id)


@router.get("/reservations/", response_model=List[schemas.ReservationOut])
def list_reservations(status: Optional[models.ReservationStatus] = None, skip: int = 0, limit: int = 50,
                      actor: models.Patron = Depends(get_actor), db: Session = Depends(get_db)):
    query = _own_rows(db.query(models.Reservation), models.Reservation, actor)
    if status is not None:
        query = query.filter(models.Reservation.status == status)
    return query.order_by(models.Reservation.reserved_at.desc()).offset(skip).limit(limit).all()


@router.post("/reservations/{reservation_id}/fulfill", response_model=schemas.LoanOut)
def fulfill_reservation(reservation_id: int, body: Optional[schemas.Notes] = None,
                        actor: models.Patron = Depends(get_actor),
                        svc: CirculationService = Depends(get_circulation)):
    return svc.fulfill_reservation(reservation_id, actor, body.notes if body else None)


@router.post("/reservations/{reservation_id}/cancel", response_model=schemas.ReservationOut)
def cancel_reservation(reservation_id: int, body: Optional[schemas.Notes] = None,
                       actor: models.Patron = Depends(get_actor),
                       svc: CirculationService = Depends(get_circulation)):
    return svc.cancel_reservation(reservation_id, actor, body.notes if body else None)


# ---- loans

@router.post("/loans/issue", response_model=schemas.LoanOut, status_code=201)
def issue_loan(body: schemas.LoanIssue, actor: models.Patron = Depends(get_actor),
               svc: CirculationService = Depends(get_circulation)):
    return svc.issue_loan(actor, body.patron_id, body.title_id, loan_days=body.loan_days, notes=body.notes)


@router.get("/loans/", response_model=List[schemas.LoanOut])
def list_loans(status: Optional[models.LoanStatus] = None, patron_id: Optional[int] = None,
               skip: int = 0, limit: int = 50,
               actor: models.Patron = Depends(get_actor), db: Session = Depends(get_db)):
    query = _own_rows(db.query(models.Loan), models.Loan, actor)
    if status is not None:
        query = query.filter(models.Loan.status == status)
    if patron_id is not None:
        query = query.filter(models.Loan.patron_id == patron_id)
    return query.order_by(models.Loan.issue_date.desc()).offset(skip).limit(limit).all()


@router.post("/loans/{loan_id}/return", response_model=schemas.LoanOut)
def return_loan(loan_id: int, body: Optional[schemas.Notes] = None, actor: models.Patron = Depends(get_actor),
                svc: CirculationService = Depends(get_circulation)):
    return svc.return_loan(loan_id, actor, body.notes if body else None)


@router.post("/loans/sweep-overdue", response_model=schemas.SweepOut)
def sweep_overdue(actor: models.Patron = Depends(get_actor), svc: CirculationService = Depends(get_circulation)):
    return svc.sweep_overdue(actor)


# ---- fines

@router.get("/fines/", response_model=List[schemas.FineOut])
def list_fines(paid_status: Optional[models.PaidStatus] = None, skip: int = 0, limit: int = 50,
               actor: models.Patron = Depends(get_actor), db: Session = Depends(get_db)):
    query = _own_rows(db.query(models.Fine).join(models.Loan), models.Loan, actor)
    if paid_status is not None:
        query = query.filter(models.Fine.paid_status == paid_status)
    return query.order_by(models.Fine.assessed_date.desc()).offset(skip).limit(limit).all()


@router.post("/fines/{fine_id}/pay", response_model=schemas.FineOut)
def pay_fine(fine_id: int, actor: models.Patron = Depends(get_actor),
             svc: CirculationService = Depends(get_circulation)):
    return svc.pay_fine(fine_id, actor)


# ---- reporting

def _top_titles(db: Session, model, limit: int = 5):
    Title = models.Title
    rows = (
        db.query(Title.id, Title.title, func.count(model.id).label('cnt'))
        .join(model, model.title_id == Title.id)
        .group_by(Title.id, Title.title)
        .order_by(func.count(model.id).desc(), Title.title)
        .limit(limit)
        .all()
    )
    return [{'title_id': r[0], 'title': r[1], 'count': r[2]} for r in rows]


@router.get("/metrics")
def metrics(db: Session = Depends(get_db)):
    Loan = models.Loan
    open_loans = db.query(func.count(Loan.id)).filter(Loan.status.in_(models.OPEN_LOAN_STATUSES)).scalar()
    overdue = (
        db.query(func.count(Loan.id))
        .filter(Loan.status.in_(models.OPEN_LOAN_STATUSES), Loan.due_date < utcnow())
        .scalar()
    )
    unpaid = (
        db.query(func.coalesce(func.sum(models.Fine.amount), 0))
        .filter(models.Fine.paid_status == models.PaidStatus.UNPAID)
        .scalar()
    )
    return {
        'total_titles': db.query(func.count(models.Title.id)).scalar(),
        'total_patrons': db.query(func.count(models.Patron.id)).scalar(),
        'open_loans': open_loans,
        'overdue_loans': overdue,
        'unpaid_fines': str(Decimal(unpaid).quantize(Decimal("0.01"))),
        'top_borrowed': _top_titles(db, Loan),
        'top_reserved': _top_titles(db, models.Reservation),
    }
