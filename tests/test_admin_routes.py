from extensions import db
from models import AuditLog, Membership, User
from tests.conftest import PASSWORD, login
from utils import membership_service


def test_admin_endpoints_require_login(client):
    response = client.get("/admin/forms")
    assert response.status_code == 401
    assert response.get_json() == {"ok": False, "error": "Authentication required"}


def test_login_reports_pending_password_change(client, make_user):
    user = make_user("district_president", "district", "Patna", password_changed=False)
    response = login(client, user)
    assert response.status_code == 200
    assert response.get_json()["password_change_required"] is True

    blocked = client.get("/admin/forms")
    assert blocked.status_code == 403
    assert blocked.get_json()["error"] == "Password change required"

    changed = client.post(
        "/change-password", json={"new_password": "N3w!Passw0rd", "confirm_password": "N3w!Passw0rd"}
    )
    assert changed.status_code == 200
    assert client.get("/admin/forms").status_code == 200


def test_login_failures(client, make_user):
    user = make_user("district_president", "district", "Patna")
    assert login(client, user, password="wrong").status_code == 401
    inactive = make_user("district_secretary", "district", "Patna", active=False)
    assert login(client, inactive).status_code == 403
    assert AuditLog.query.filter_by(action="login").count() == 0


def test_forms_listing_is_scoped(client, make_user, make_application):
    make_application(district="Muzaffarpur")
    make_application(district="Patna")
    user = make_user("division_secretary", "division", "Tirhut")
    login(client, user)

    payload = client.get("/admin/forms").get_json()
    assert payload["total"] == 1
    assert payload["forms"][0]["district"] == "Muzaffarpur"


def test_out_of_scope_action_is_a_bare_403(client, make_user, make_application):
    application = make_application(district="Patna")
    user = make_user("district_president", "district", "Katihar")
    login(client, user)

    for action in ("claim", "accept", "reject", "assign", "manage-role"):
        response = client.post(f"/admin/forms/{application.id}/{action}", json={"category": "karyakarini", "role": "sachiv"})
        assert response.status_code == 403, action
        assert response.get_json() == {"ok": False, "error": "Forbidden"}

    assert client.get(f"/admin/forms/{application.id}").status_code == 403
    assert db.session.get(Membership, application.id, populate_existing=True).status == "pending"
    assert AuditLog.query.filter_by(action="authorization_denied", performed_by=user.id).count() == 6


def test_action_endpoints_are_post_only(client, superadmin, make_application):
    application = make_application()
    login(client, superadmin)
    response = client.get(f"/admin/forms/{application.id}/accept")
    assert response.status_code == 405


def test_claim_conflict_over_http(client, make_user, make_application):
    application = make_application()
    first = make_user("district_president", "district", "Muzaffarpur")
    membership_service.claim(first, application.id)

    second = make_user("division_president", "division", "Tirhut")
    login(client, second)
    response = client.post(f"/admin/forms/{application.id}/claim", json={})
    assert response.status_code == 409
    assert response.get_json() == {"ok": False, "error": "Form already assigned"}


def test_accept_and_manage_role_flow(client, make_user, make_application):
    application = make_application(district="Katihar", email="member@example.org")
    officer = make_user("district_president", "district", "Katihar")
    login(client, officer)

    detail = client.get(f"/admin/forms/{application.id}").get_json()
    assert detail["can_act"] is True
    assert detail["form"]["history"][0]["action"] == "submitted"

    accepted = client.post(f"/admin/forms/{application.id}/accept", json={"note": "Verified in person"})
    assert accepted.status_code == 200
    body = accepted.get_json()
    assert body["form"]["status"] == "accepted"
    assert body["form"]["membership_id"].startswith("RMAS/BIH/KAT/")
    assert body["joining_letter"] is True

    role = client.post(
        f"/admin/forms/{application.id}/manage-role",
        json={"category": "karyakarini", "role": "adhyaksh", "team_type": "mahila", "reason": "Elected"},
    )
    assert role.status_code == 200
    assert role.get_json()["role"]["role_name"] == "Adhyaksh"

    again = client.post(f"/admin/forms/{application.id}/reject", json={"note": "Too late"})
    assert again.status_code == 400
    assert db.session.get(Membership, application.id, populate_existing=True).status == "accepted"


def test_manage_role_validation(client, superadmin, make_application):
    application = make_application()
    login(client, superadmin)
    missing = client.post(f"/admin/forms/{application.id}/manage-role", json={"category": "karyakarini"})
    assert missing.status_code == 400
    assert missing.get_json()["error"].startswith("Post:")

    pending = client.post(
        f"/admin/forms/{application.id}/manage-role", json={"category": "karyakarini", "role": "sachiv"}
    )
    assert pending.status_code == 400
    assert pending.get_json()["error"] == "Only accepted members can be assigned roles"


def test_unknown_form_is_404(client, superadmin):
    login(client, superadmin)
    response = client.post("/admin/forms/does-not-exist/claim", json={})
    assert response.status_code == 404
    assert response.get_json() == {"ok": False, "error": "Application not found"}


def test_roles_catalogue(client, superadmin):
    login(client, superadmin)
    everything = client.get("/admin/roles").get_json()
    assert [c["code"] for c in everything["categories"]] == ["karyakarini", "salahkar"]
    assert "mahila" in everything["teams"]
    one = client.get("/admin/roles?category=karyakarini").get_json()
    assert [r["code"] for r in one["roles"]] == ["adhyaksh", "sachiv"]


def test_user_provisioning_over_http(client, make_user):
    actor = make_user("division_president", "division", "Tirhut")
    login(client, actor)

    created = client.post(
        "/admin/users",
        json={
            "name": "Meena",
            "email": "meena@example.org",
            "password": PASSWORD,
            "role": "district_secretary",
            "assigned_level": "district",
            "assigned_id": "Sitamarhi",
        },
    )
    assert created.status_code == 201
    new_id = created.get_json()["user"]["id"]

    same_level = client.post(
        "/admin/users",
        json={
            "name": "Peer",
            "email": "peer@example.org",
            "password": PASSWORD,
            "role": "division_secretary",
            "assigned_level": "division",
            "assigned_id": "Tirhut",
        },
    )
    assert same_level.status_code == 403
    assert same_level.get_json() == {"ok": False, "error": "Forbidden"}

    listed = {u["email"] for u in client.get("/admin/users").get_json()["users"]}
    assert listed == {actor.email, "meena@example.org"}

    deactivated = client.post(f"/admin/users/{new_id}", json={"active": "false"})
    assert deactivated.get_json()["user"]["active"] is False
    assert client.post(f"/admin/users/{new_id}/delete", json={}).status_code == 403
    assert db.session.get(User, new_id) is not None


def test_audit_logs_are_scoped(client, superadmin, make_user, make_application):
    inside = make_application(district="Sitamarhi")
    outside = make_application(district="Patna")
    membership_service.accept(superadmin, outside.id)
    user = make_user("division_president", "division", "Tirhut")
    login(client, user)

    logs = client.get("/admin/audit-logs").get_json()["logs"]
    targets = {entry["target_id"] for entry in logs}
    assert inside.id in targets
    assert outside.id not in targets

    filtered = client.get("/admin/audit-logs?action=login").get_json()["logs"]
    assert [entry["action"] for entry in filtered] == ["login"]
    assert client.get("/admin/audit-logs?action=bogus").status_code == 400


def test_location_reload_is_superadmin_only(client, make_user, superadmin):
    user = make_user("state_president", "state", "Bihar")
    login(client, user)
    assert client.post("/admin/locations/reload", json={}).status_code == 403
