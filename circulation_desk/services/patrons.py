from typing import List, Optional

from sqlalchemy.orm import Session

from circulation_desk.core.database import transaction
from circulation_desk.core.errors import Conflict, InvalidState, NotFound, PermissionDenied
from circulation_desk.core.logging import get_logger
from circulation_desk.models.models import MembershipType, Patron, PatronStatus, Role
from circulation_desk.services.access import ROLE_RANK, require_role

logger = get_logger("patrons")


class PatronService:
    def __init__(self, db: Session):
        self.db = db

    def get(self, patron_id: int) -> Patron:
        patron = self.db.get(Patron, patron_id)
        if not patron:
            raise NotFound("Patron", patron_id)
        return patron

    def list(self, status: Optional[PatronStatus] = None, skip: int = 0, limit: int = 50) -> List[Patron]:
        query = self.db.query(Patron)
        if status is not None:
            query = query.filter(Patron.status == status)
        return query.order_by(Patron.full_name).offset(skip).limit(limit).all()

    def register(self, full_name: str, email: str, phone: Optional[str] = None,
                 membership_type: MembershipType = MembershipType.PUBLIC) -> Patron:
        """Self-registration: a pending member awaiting staff approval."""
        return self._create(full_name, email, phone, membership_type, Role.MEMBER, PatronStatus.PENDING)

    def bootstrap_admin(self, full_name: str, email: str) -> Patron:
        """Create an active superadmin; used once from the CLI on a fresh database."""
        return self._create(full_name, email, None, MembershipType.PUBLIC, Role.SUPERADMIN, PatronStatus.ACTIVE)

    def _create(self, full_name, email, phone, membership_type, role, status) -> Patron:
        with transaction(self.db):
            email = email.strip().lower()
            if self.db.query(Patron).filter(Patron.email == email).first():
                raise Conflict("Email already registered", details={"email": email})
            patron = Patron(
                full_name=full_name.strip(),
                email=email,
                phone=phone,
                membership_type=membership_type,
                role=role,
                status=status,
            )
            self.db.add(patron)
            self.db.flush()
        logger.info(f"Registered patron id={patron.id} role={role.value} status={status.value}")
        return patron

    def _set_status(self, actor: Optional[Patron], patron_id: int, allowed_from, target: PatronStatus) -> Patron:
        require_role(actor, Role.HEAD_LIBRARIAN)
        with transaction(self.db):
            patron = self.get(patron_id)
            if patron.status not in allowed_from:
                raise InvalidState(
                    f"Patron {patron_id} is {patron.status.value}, cannot become {target.value}",
                    details={"patron_id": patron_id, "status": patron.status.value},
                )
            patron.status = target
        logger.info(f"Patron id={patron_id} is now {target.value} (by {actor.id})")
        return patron

    def approve(self, actor: Optional[Patron], patron_id: int) -> Patron:
        return self._set_status(actor, patron_id, (PatronStatus.PENDING,), PatronStatus.ACTIVE)

    def suspend(self, actor: Optional[Patron], patron_id: int) -> Patron:
        return self._set_status(actor, patron_id, (PatronStatus.ACTIVE,), PatronStatus.SUSPENDED)

    def reactivate(self, actor: Optional[Patron], patron_id: int) -> Patron:
        return self._set_status(actor, patron_id, (PatronStatus.SUSPENDED,), PatronStatus.ACTIVE)

    def change_role(self, actor: Optional[Patron], patron_id: int, role: Role) -> Patron:
        require_role(actor, Role.ADMIN)
        role = Role(role)
        if ROLE_RANK[role] > ROLE_RANK[actor.role]:
            raise PermissionDenied(
                f"Cannot grant {role.value} above own role {actor.role.value}",
                details={"role": role.value},
            )
        with transaction(self.db):
            patron = self.get(patron_id)
            if ROLE_RANK[patron.role] > ROLE_RANK[actor.role]:
                raise PermissionDenied(
                    f"Cannot change the role of a {patron.role.value} from {actor.role.value}",
                    details={"patron_id": patron_id, "role": patron.role.value},
                )
            patron.role = role
        logger.info(f"Patron id={patron_id} role set to {role.value} (by {actor.id})")
        return patron
