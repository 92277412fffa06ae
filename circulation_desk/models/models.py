import enum

from sqlalchemy import (CheckConstraint, Column, DateTime, Enum, ForeignKey, Index, Integer,
                        Numeric, String, Text)
from sqlalchemy.orm import relationship

from circulation_desk.core.database import Base
from circulation_desk.core.utils import utcnow


def _enum(cls):
    # store the lowercase values, not the member names
    return Enum(cls, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e])


class Role(str, enum.Enum):
    MEMBER = "member"
    LIBRARIAN = "librarian"
    HEAD_LIBRARIAN = "head_librarian"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class PatronStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class MembershipType(str, enum.Enum):
    STUDENT = "student"
    FACULTY = "faculty"
    PUBLIC = "public"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FULFILLED = "fulfilled"


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class LoanStatus(str, enum.Enum):
    ISSUED = "issued"
    RETURNED = "returned"
    OVERDUE = "overdue"


OPEN_LOAN_STATUSES = (LoanStatus.ISSUED, LoanStatus.OVERDUE)


class PaidStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"


class Title(Base):
    __tablename__ = "titles"
    id = Column(Integer, primary_key=True, index=True)
    isbn = Column(String, unique=True, index=True, nullable=True)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)
    publisher = Column(String, nullable=True)
    year = Column(Integer, nullable=True)
    genre = Column(String, nullable=True)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1, index=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("total_copies >= 0", name="ck_titles_total_non_negative"),
        CheckConstraint("available_copies >= 0", name="ck_titles_available_non_negative"),
        CheckConstraint("available_copies <= total_copies", name="ck_titles_available_le_total"),
    )
    __mapper_args__ = {"version_id_col": version}

Index('ix_titles_title_author', Title.title, Title.author)


class Patron(Base):
    __tablename__ = "patrons"
    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    phone = Column(String, nullable=True)
    membership_type = Column(_enum(MembershipType), nullable=False, default=MembershipType.PUBLIC)
    role = Column(_enum(Role), nullable=False, default=Role.MEMBER)
    status = Column(_enum(PatronStatus), nullable=False, default=PatronStatus.PENDING, index=True)
    joined_at = Column(DateTime, default=utcnow)

    loans = relationship("Loan", back_populates="patron", foreign_keys="Loan.patron_id")


class CirculationRequest(Base):
    __tablename__ = "circulation_requests"
    id = Column(Integer, primary_key=True, index=True)
    title_id = Column(Integer, ForeignKey("titles.id", ondelete="SET NULL"), nullable=True, index=True)
    patron_id = Column(Integer, ForeignKey("patrons.id"), nullable=False, index=True)
    status = Column(_enum(RequestStatus), nullable=False, default=RequestStatus.PENDING, index=True)
    notes = Column(Text, nullable=True)
    requested_at = Column(DateTime, nullable=False)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(Integer, ForeignKey("patrons.id"), nullable=True)
    review_notes = Column(Text, nullable=True)
    fulfilled_at = Column(DateTime, nullable=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=True)


class Reservation(Base):
    __tablename__ = "reservations"
    id = Column(Integer, primary_key=True, index=True)
    title_id = Column(Integer, ForeignKey("titles.id", ondelete="SET NULL"), nullable=True, index=True)
    patron_id = Column(Integer, ForeignKey("patrons.id"), nullable=False, index=True)
    status = Column(_enum(ReservationStatus), nullable=False, default=ReservationStatus.PENDING, index=True)
    reserved_at = Column(DateTime, nullable=False)
    fulfilled_at = Column(DateTime, nullable=True)
    fulfilled_by = Column(Integer, ForeignKey("patrons.id"), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=True)


class Loan(Base):
    __tablename__ = "loans"
    id = Column(Integer, primary_key=True, index=True)
    title_id = Column(Integer, ForeignKey("titles.id", ondelete="SET NULL"), nullable=True, index=True)
    patron_id = Column(Integer, ForeignKey("patrons.id"), nullable=False, index=True)
    issued_by = Column(Integer, ForeignKey("patrons.id"), nullable=False)
    issue_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False, index=True)
    return_date = Column(DateTime, nullable=True)
    status = Column(_enum(LoanStatus), nullable=False, default=LoanStatus.ISSUED, index=True)
    notes = Column(Text, nullable=True)

    patron = relationship("Patron", back_populates="loans", foreign_keys=[patron_id])
    fine = relationship("Fine", back_populates="loan", uselist=False)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LOAN_STATUSES


class Fine(Base):
    __tablename__ = "fines"
    id = Column(Integer, primary_key=True, index=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=False, unique=True)
    amount = Column(Numeric(10, 2), nullable=False)
    paid_status = Column(_enum(PaidStatus), nullable=False, default=PaidStatus.UNPAID, index=True)
    assessed_date = Column(DateTime, nullable=False)
    paid_at = Column(DateTime, nullable=True)

    loan = relationship("Loan", back_populates="fine")

    __table_args__ = (CheckConstraint("amount >= 0", name="ck_fines_amount_non_negative"),)
