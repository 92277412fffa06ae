import pytest

from circulation_desk.core.errors import PermissionDenied
from circulation_desk.models.models import PatronStatus, Role
from circulation_desk.services.access import has_permission, require_role, require_self_or_staff


@pytest.mark.parametrize("actor,required,expected", [
    (Role.MEMBER, Role.MEMBER, True),
    (Role.MEMBER, Role.LIBRARIAN, False),
    (Role.LIBRARIAN, Role.LIBRARIAN, True),
    (Role.HEAD_LIBRARIAN, Role.LIBRARIAN, True),
    (Role.ADMIN, Role.HEAD_LIBRARIAN, True),
    (Role.ADMIN, Role.SUPERADMIN, False),
    (Role.SUPERADMIN, Role.ADMIN, True),
    (None, Role.MEMBER, False),
])
def test_has_permission(actor, required, expected):
    assert has_permission(actor, required) is expected


def test_plain_strings_are_accepted():
    assert has_permission("admin", Role.LIBRARIAN)


def test_require_role_rejects_missing_actor():
    with pytest.raises(PermissionDenied):
        require_role(None, Role.MEMBER)


def test_require_role_rejects_inactive_staff(make_patron):
    suspended = make_patron(Role.ADMIN, status=PatronStatus.SUSPENDED)
    with pytest.raises(PermissionDenied) as exc:
        require_role(suspended, Role.MEMBER)
    assert exc.value.details["status"] == "suspended"


def test_require_role_returns_actor(librarian):
    assert require_role(librarian, Role.LIBRARIAN) is librarian


def test_members_act_only_for_themselves(member, make_patron, librarian):
    other = make_patron()
    assert require_self_or_staff(member, member.id) is member
    with pytest.raises(PermissionDenied):
        require_self_or_staff(member, other.id)
    assert require_self_or_staff(librarian, other.id) is librarian
