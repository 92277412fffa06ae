from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, constr

from circulation_desk.models.models import (LoanStatus, MembershipType, PaidStatus, PatronStatus,
                                            RequestStatus, ReservationStatus, Role)


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---- titles

class TitleBase(BaseModel):
    title: constr(min_length=1)
    author: constr(min_length=1)
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    year: Optional[int] = None
    genre: Optional[str] = None


class TitleCreate(TitleBase):
    total_copies: int = Field(default=1, ge=0)


class TitleUpdate(BaseModel):
    title: Optional[constr(min_length=1)] = None
    author: Optional[constr(min_length=1)] = None
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    year: Optional[int] = None
    genre: Optional[str] = None
    total_copies: Optional[int] = Field(default=None, ge=0)


class TitleOut(TitleBase, ORMModel):
    id: int
    total_copies: int
    available_copies: int
    created_at: datetime


# ---- patrons

class PatronCreate(BaseModel):
    full_name: constr(min_length=1)
    email: constr(min_length=5)
    phone: Optional[str] = None
    membership_type: MembershipType = MembershipType.PUBLIC


class PatronOut(ORMModel):
    id: int
    full_name: str
    email: str
    phone: Optional[str] = None
    membership_type: MembershipType
    role: Role
    status: PatronStatus
    joined_at: datetime


class RoleChange(BaseModel):
    role: Role


# ---- circulation

class RequestCreate(BaseModel):
    title_id: int
    patron_id: Optional[int] = None
    notes: Optional[str] = None


class RequestReview(BaseModel):
    decision: Literal["approved", "rejected"]
    notes: Optional[str] = None


class RequestOut(ORMModel):
    id: int
    title_id: Optional[int] = None
    patron_id: int
    status: RequestStatus
    notes: Optional[str] = None
    requested_at: datetime
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[int] = None
    review_notes: Optional[str] = None
    fulfilled_at: Optional[datetime] = None
    loan_id: Optional[int] = None


class ReservationCreate(BaseModel):
    title_id: int
    patron_id: Optional[int] = None


class Notes(BaseModel):
    notes: Optional[str] = None


class ReservationOut(ORMModel):
    id: int
    title_id: Optional[int] = None
    patron_id: int
    status: ReservationStatus
    reserved_at: datetime
    fulfilled_at: Optional[datetime] = None
    fulfilled_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    notes: Optional[str] = None
    loan_id: Optional[int] = None


class LoanIssue(BaseModel):
    patron_id: int
    title_id: int
    loan_days: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = None


class LoanOut(ORMModel):
    id: int
    title_id: Optional[int] = None
    patron_id: int
    issued_by: int
    issue_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: LoanStatus
    notes: Optional[str] = None


class FineOut(ORMModel):
    id: int
    loan_id: int
    amount: Decimal
    paid_status: PaidStatus
    assessed_date: datetime
    paid_at: Optional[datetime] = None


class SweepOut(ORMModel):
    loans_marked_overdue: int
    fines_assessed: int
    total_unpaid: Decimal
