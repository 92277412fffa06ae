"""Role hierarchy and the single permission check used by every service."""
from typing import Optional

from circulation_desk.core.errors import PermissionDenied
from circulation_desk.models.models import Patron, PatronStatus, Role

ROLE_RANK = {
    Role.MEMBER: 1,
    Role.LIBRARIAN: 2,
    Role.HEAD_LIBRARIAN: 3,
    Role.ADMIN: 4,
    Role.SUPERADMIN: 5,
}


def has_permission(actor_role: Optional[Role], required_role: Role) -> bool:
    if actor_role is None:
        return False
    return ROLE_RANK[Role(actor_role)] >= ROLE_RANK[required_role]


def is_staff(actor: Optional[Patron]) -> bool:
    return actor is not None and has_permission(actor.role, Role.LIBRARIAN)


def require_role(actor: Optional[Patron], required_role: Role) -> Patron:
    """Return the actor if it is active and ranked at least `required_role`."""
    if actor is None:
        raise PermissionDenied("Authentication required")
    if actor.status != PatronStatus.ACTIVE:
        raise PermissionDenied(
            f"Patron {actor.id} is {actor.status.value} and may not transact",
            details={"patron_id": actor.id, "status": actor.status.value},
        )
    if not has_permission(actor.role, required_role):
        raise PermissionDenied(
            f"Role {actor.role.value} cannot perform an action requiring {required_role.value}",
            details={"role": actor.role.value, "required": required_role.value},
        )
    return actor


def require_self_or_staff(actor: Optional[Patron], patron_id: int) -> Patron:
    """Members may act only for themselves; staff may act for anyone."""
    require_role(actor, Role.MEMBER)
    if actor.id != patron_id and not is_staff(actor):
        raise PermissionDenied(
            "Members may only act on their own behalf",
            details={"patron_id": patron_id},
        )
    return actor
