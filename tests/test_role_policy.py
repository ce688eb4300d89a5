from types import SimpleNamespace

import pytest

from models import AuditLog, User, UserAssignmentError
from extensions import db
from utils import user_service
from utils.cascade import can_create_user, can_delete_user, can_manage_user
from utils.errors import AuthorizationError, NotFoundError, ValidationError
from utils.roles import LEVELS, ROLE_CODES, AdminRole, parse_role, roles_for_level

ENTITY = {"state": "Bihar", "division": "Tirhut", "district": "Muzaffarpur", "block": "Kanti"}


def admin(role, level=None, entity=None):
    return SimpleNamespace(id=f"{role}-{entity}", role=role, assigned_level=level, assigned_id=entity)


def test_role_codes_parse_into_function_and_level():
    assert parse_role("district_media_incharge") == AdminRole(function="media_incharge", level="district")
    assert parse_role("SuperAdmin").is_superadmin
    assert parse_role("block_secretary").code == "block_secretary"
    assert len(ROLE_CODES) == 1 + 3 * len(LEVELS)
    with pytest.raises(ValueError):
        parse_role("district_chairman")
    with pytest.raises(ValueError):
        parse_role("media_incharge")


def test_roles_for_level():
    assert roles_for_level("division") == ["division_president", "division_secretary", "division_media_incharge"]


@pytest.mark.parametrize("actor_level", LEVELS)
@pytest.mark.parametrize("target_level", LEVELS)
def test_descent_only_provisioning(hierarchy, actor_level, target_level):
    actor = admin(f"{actor_level}_president", actor_level, ENTITY[actor_level])
    expected = LEVELS.index(target_level) > LEVELS.index(actor_level) and actor_level != "block"
    assert can_create_user(actor, target_level, ENTITY[target_level], hierarchy=hierarchy) is expected


@pytest.mark.parametrize("target_level", LEVELS)
def test_superadmin_provisions_every_level(hierarchy, target_level):
    assert can_create_user(admin("superadmin"), target_level, ENTITY[target_level], hierarchy=hierarchy)


@pytest.mark.parametrize("level", ["state", "division", "district"])
def test_media_incharge_provisions_nobody(hierarchy, level):
    actor = admin(f"{level}_media_incharge", level, ENTITY[level])
    assert not any(can_create_user(actor, target, ENTITY[target], hierarchy=hierarchy) for target in LEVELS)


def test_provisioning_stays_inside_scope(hierarchy):
    tirhut = admin("division_secretary", "division", "Tirhut")
    assert can_create_user(tirhut, "district", "Sitamarhi", hierarchy=hierarchy)
    assert not can_create_user(tirhut, "district", "Patna", hierarchy=hierarchy)
    assert not can_create_user(tirhut, "block", "Danapur", hierarchy=hierarchy)


def test_manage_and_delete_rules(hierarchy):
    superadmin = admin("superadmin")
    state = admin("state_president", "state", "Bihar")
    district = admin("district_president", "district", "Patna")
    other_super = SimpleNamespace(id="other", role="superadmin", is_superadmin=True)
    district_target = SimpleNamespace(id="d", role="district_secretary", assigned_level="district", assigned_id="Patna", is_superadmin=False)

    assert can_manage_user(state, district_target, hierarchy=hierarchy)
    assert not can_manage_user(district, district_target, hierarchy=hierarchy)
    assert not can_manage_user(state, other_super, hierarchy=hierarchy)
    assert can_manage_user(superadmin, other_super, hierarchy=hierarchy)
    assert not can_manage_user(superadmin, SimpleNamespace(id=superadmin.id, is_superadmin=True), hierarchy=hierarchy)

    assert can_delete_user(superadmin, district_target)
    assert not can_delete_user(state, district_target)


def test_user_row_rejects_level_mismatch(app):
    user = User(name="Wrong", email="wrong@rmas-bihar.org", role="district_president", assigned_level="block", assigned_id="Kanti")
    user.set_password("Str0ng!Pass")
    db.session.add(user)
    with pytest.raises(UserAssignmentError):
        db.session.flush()
    db.session.rollback()


def test_create_user_inside_scope(app, make_user):
    actor = make_user("state_president", "state", "Bihar")
    created = user_service.create_user(
        actor,
        name="Anil",
        email="Anil@Example.org",
        password="Str0ng!Pass",
        role="district_secretary",
        assigned_level="district",
        assigned_id="patna",
    )
    assert created.email == "anil@example.org"
    assert created.assigned_id == "Patna"
    assert created.password_changed is False
    assert created.created_by_id == actor.id
    assert AuditLog.query.filter_by(action="user_created", target_id=created.id).count() == 1


@pytest.mark.parametrize(
    "role, level, entity",
    [
        ("division_president", "division", "Tirhut"),
        ("state_secretary", "state", "Bihar"),
        ("district_president", "district", "Patna"),
        ("superadmin", None, None),
    ],
)
def test_create_user_outside_authority_is_forbidden(app, make_user, role, level, entity):
    actor = make_user("division_president", "division", "Tirhut")
    with pytest.raises(AuthorizationError):
        user_service.create_user(actor, "Nope", "nope@example.org", "Str0ng!Pass", role, level, entity)
    assert User.query.filter_by(email="nope@example.org").first() is None
    assert AuditLog.query.filter_by(action="authorization_denied", performed_by=actor.id).count() == 1


def test_create_user_validation(app, superadmin):
    with pytest.raises(ValidationError, match="must be assigned at district level"):
        user_service.create_user(superadmin, "A", "a@example.org", "Str0ng!Pass", "district_president", "block", "Kanti")
    with pytest.raises(ValidationError, match="Unknown location"):
        user_service.create_user(superadmin, "A", "a@example.org", "Str0ng!Pass", "district_president", "district", "Gotham")
    with pytest.raises(ValidationError, match="uppercase"):
        user_service.create_user(superadmin, "A", "a@example.org", "weakpass1!", "district_president", "district", "Patna")

    user_service.create_user(superadmin, "A", "a@example.org", "Str0ng!Pass", "district_president", "district", "Patna")
    with pytest.raises(ValidationError, match="already exists"):
        user_service.create_user(superadmin, "B", "A@example.org", "Str0ng!Pass", "district_president", "district", "Katihar")


def test_only_superadmin_creates_superadmin(app, superadmin):
    created = user_service.create_user(superadmin, "Root Two", "root2@example.org", "Str0ng!Pass", "superadmin")
    assert created.assigned_level is None and created.assigned_id is None


def test_update_user_toggles_active_and_audits(app, make_user):
    actor = make_user("state_president", "state", "Bihar")
    target = make_user("district_secretary", "district", "Patna")

    user_service.update_user(actor, target.id, active=False)
    assert db.session.get(User, target.id).active is False
    user_service.update_user(actor, target.id, active=True, role="district_president", assigned_level="district", assigned_id="Katihar")

    refreshed = db.session.get(User, target.id)
    assert (refreshed.role, refreshed.assigned_id, refreshed.active) == ("district_president", "Katihar", True)
    actions = [row.action for row in AuditLog.query.filter_by(target_id=target.id).order_by(AuditLog.id)]
    assert actions == ["user_edited", "user_deactivated", "user_edited", "user_reactivated"]


def test_update_user_cannot_promote_to_own_level(app, make_user):
    actor = make_user("division_president", "division", "Tirhut")
    target = make_user("district_secretary", "district", "Sitamarhi")
    with pytest.raises(AuthorizationError):
        user_service.update_user(actor, target.id, role="division_secretary", assigned_level="division", assigned_id="Tirhut")


def test_delete_user_releases_claims(app, superadmin, make_user, make_application):
    from utils import membership_service

    officer = make_user("district_president", "district", "Muzaffarpur")
    officer_id = officer.id
    application = make_application()
    membership_service.claim(officer, application.id)

    user_service.delete_user(superadmin, officer_id)

    assert db.session.get(User, officer_id) is None
    reloaded = membership_service.visible_form(superadmin, application.id)
    assert reloaded.assigned_to_id is None
    assert [entry.actor_id for entry in reloaded.history if entry.action == "claimed"] == [officer_id]
    with pytest.raises(NotFoundError):
        user_service.delete_user(superadmin, officer_id)


def test_only_superadmin_deletes(app, make_user):
    actor = make_user("state_president", "state", "Bihar")
    target = make_user("district_secretary", "district", "Patna")
    with pytest.raises(AuthorizationError):
        user_service.delete_user(actor, target.id)
