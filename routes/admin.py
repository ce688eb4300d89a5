"""Administrator blueprint: the application queue, role grants, user provisioning and audit trail."""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from flask_wtf import FlaskForm
from sqlalchemy import or_
from wtforms import PasswordField, StringField, TextAreaField
from wtforms.validators import DataRequired, Email, Length, Optional, ValidationError as FormValidationError

from extensions import db
from models import AUDIT_ACTIONS, AuditLog, Membership
from utils import membership_service, user_service
from utils.audit import record_audit
from utils.cascade import apply_scope, can_assign_role, can_perform_actions
from utils.decorators import password_change_required, superadmin_required
from utils.errors import ValidationError, raise_for_form
from utils.locations import get_hierarchy
from utils.roles import LEVELS, ROLE_CODES, TEAM_TYPES, get_catalogue

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")

TRUE_VALUES = {"1", "true", "on", "yes"}


class NoteForm(FlaskForm):
    note = TextAreaField("Note", validators=[Optional(), Length(max=1000)])


class AcceptForm(NoteForm):
    job_role = StringField("Job role", validators=[Optional(), Length(max=120)])
    team_type = StringField("Team", validators=[Optional()])

    def validate_team_type(self, field):
        if field.data and field.data not in TEAM_TYPES:
            raise FormValidationError("Invalid team type")


class AssignForm(NoteForm):
    user_id = StringField("Assign to", validators=[Optional(), Length(max=36)])


class ManageRoleForm(FlaskForm):
    category = StringField("Category", validators=[DataRequired(), Length(max=60)])
    role = StringField("Post", validators=[DataRequired(), Length(max=80)])
    team_type = StringField("Team", validators=[Optional()])
    level = StringField("Level", validators=[Optional()])
    location = StringField("Location", validators=[Optional(), Length(max=120)])
    reason = TextAreaField("Reason", validators=[Optional(), Length(max=500)])

    def validate_level(self, field):
        if field.data and field.data not in LEVELS:
            raise FormValidationError("Invalid level")


class UserForm(FlaskForm):
    name = StringField("Name", validators=[DataRequired(), Length(max=150)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired()])
    role = StringField("Role", validators=[DataRequired()])
    assigned_level = StringField("Level", validators=[Optional()])
    assigned_id = StringField("Assigned to", validators=[Optional(), Length(max=120)])
    active = StringField("Active", validators=[Optional()])

    def validate_role(self, field):
        if field.data not in ROLE_CODES:
            raise FormValidationError("Invalid role selected")


class UserEditForm(FlaskForm):
    name = StringField("Name", validators=[Optional(), Length(max=150)])
    password = PasswordField("Password", validators=[Optional()])
    role = StringField("Role", validators=[Optional()])
    assigned_level = StringField("Level", validators=[Optional()])
    assigned_id = StringField("Assigned to", validators=[Optional(), Length(max=120)])
    active = StringField("Active", validators=[Optional()])

    def validate_role(self, field):
        if field.data and field.data not in ROLE_CODES:
            raise FormValidationError("Invalid role selected")


def _flag(value, default=None):
    if value is None or value == "":
        return default
    return str(value).strip().lower() in TRUE_VALUES


def _validated(form):
    if not form.validate_on_submit():
        raise_for_form(form)
    return form


def _page() -> int:
    try:
        return max(1, int(request.args.get("page", 1)))
    except ValueError as exc:
        raise ValidationError("Invalid page") from exc


@admin_bp.route("/me")
@password_change_required
def me():
    return jsonify({"ok": True, "user": current_user.public_payload()})


@admin_bp.route("/forms")
@password_change_required
def list_forms():
    status = request.args.get("status") or None
    per_page = int(current_app.config.get("FORMS_PER_PAGE", 25))
    page = membership_service.list_forms(current_user, status, _page(), per_page)
    return jsonify(
        {
            "ok": True,
            "forms": [membership.public_payload() for membership in page.items],
            "page": page.page,
            "pages": page.pages,
            "total": page.total,
        }
    )


@admin_bp.route("/forms/<string:membership_id>")
@password_change_required
def form_detail(membership_id):
    membership = membership_service.visible_form(current_user, membership_id)
    can_act = can_perform_actions(current_user, membership)
    payload = membership.public_payload()
    payload["history"] = [entry.public_payload() for entry in membership.history]
    payload["roles"] = [assignment.public_payload() for assignment in membership.role_assignments]
    return jsonify(
        {
            "ok": True,
            "form": payload,
            "can_act": can_act,
            "can_assign_role": can_assign_role(current_user, membership),
            "assignees": [user.public_payload() for user in membership_service.eligible_assignees(membership)]
            if can_act
            else [],
        }
    )


@admin_bp.route("/forms/<string:membership_id>/claim", methods=["POST"])
@password_change_required
def claim_form(membership_id):
    form = _validated(NoteForm())
    membership = membership_service.claim(current_user, membership_id, form.note.data)
    return jsonify({"ok": True, "form": membership.public_payload()})


@admin_bp.route("/forms/<string:membership_id>/assign", methods=["POST"])
@password_change_required
def assign_form(membership_id):
    form = _validated(AssignForm())
    membership = membership_service.assign_to_user(current_user, membership_id, form.user_id.data or None, form.note.data)
    return jsonify({"ok": True, "form": membership.public_payload()})


@admin_bp.route("/forms/<string:membership_id>/accept", methods=["POST"])
@password_change_required
def accept_form(membership_id):
    form = _validated(AcceptForm())
    membership = membership_service.accept(
        current_user,
        membership_id,
        note=form.note.data,
        job_role=form.job_role.data or None,
        team_type=form.team_type.data or None,
    )
    return jsonify(
        {
            "ok": True,
            "form": membership.public_payload(),
            "joining_letter": bool(membership.pdf_path),
        }
    )


@admin_bp.route("/forms/<string:membership_id>/reject", methods=["POST"])
@password_change_required
def reject_form(membership_id):
    form = _validated(NoteForm())
    membership = membership_service.reject(current_user, membership_id, form.note.data)
    return jsonify({"ok": True, "form": membership.public_payload()})


@admin_bp.route("/forms/<string:membership_id>/manage-role", methods=["POST"])
@password_change_required
def manage_role(membership_id):
    form = _validated(ManageRoleForm())
    assignment = membership_service.assign_role(
        current_user,
        membership_id,
        category=form.category.data,
        role_code=form.role.data,
        team_type=form.team_type.data or "core",
        level=form.level.data or None,
        location=form.location.data or None,
        reason=form.reason.data or None,
    )
    return jsonify({"ok": True, "role": assignment.public_payload()})


@admin_bp.route("/forms/<string:membership_id>/resend-joining-letter", methods=["POST"])
@password_change_required
def resend_joining_letter(membership_id):
    _validated(FlaskForm())
    membership = membership_service.resend_joining_letter(current_user, membership_id)
    return jsonify({"ok": True, "message": f"Joining letter sent to {membership.email}"})


@admin_bp.route("/roles")
@password_change_required
def roles():
    catalogue = get_catalogue()
    category = request.args.get("category")
    if category:
        return jsonify({"ok": True, "category": category, "roles": catalogue.posts(category)})
    return jsonify({"ok": True, "categories": catalogue.summary(), "teams": list(TEAM_TYPES)})


@admin_bp.route("/users")
@password_change_required
def list_users():
    users = user_service.list_users(current_user)
    return jsonify({"ok": True, "users": [user.public_payload() for user in users]})


@admin_bp.route("/users", methods=["POST"])
@password_change_required
def create_user():
    form = _validated(UserForm())
    user = user_service.create_user(
        current_user,
        name=form.name.data,
        email=form.email.data,
        password=form.password.data,
        role=form.role.data,
        assigned_level=form.assigned_level.data or None,
        assigned_id=form.assigned_id.data or None,
        active=_flag(form.active.data, default=True),
    )
    return jsonify({"ok": True, "user": user.public_payload()}), 201


@admin_bp.route("/users/<string:user_id>", methods=["POST"])
@password_change_required
def update_user(user_id):
    form = _validated(UserEditForm())
    user = user_service.update_user(
        current_user,
        user_id,
        name=form.name.data or None,
        role=form.role.data or None,
        assigned_level=form.assigned_level.data or None,
        assigned_id=form.assigned_id.data or None,
        active=_flag(form.active.data),
        password=form.password.data or None,
    )
    return jsonify({"ok": True, "user": user.public_payload()})


@admin_bp.route("/users/<string:user_id>/delete", methods=["POST"])
@password_change_required
def delete_user(user_id):
    _validated(FlaskForm())
    user_service.delete_user(current_user, user_id)
    return jsonify({"ok": True})


@admin_bp.route("/audit-logs")
@password_change_required
def audit_logs():
    query = AuditLog.query
    if not current_user.is_superadmin:
        visible_users = [user.id for user in user_service.list_users(current_user)]
        scoped_forms = [row.id for row in apply_scope(Membership.query, current_user).with_entities(Membership.id)]
        query = query.filter(or_(AuditLog.performed_by.in_(visible_users), AuditLog.target_id.in_(scoped_forms)))
    action = request.args.get("action")
    if action:
        if action not in AUDIT_ACTIONS:
            raise ValidationError("Unknown audit action")
        query = query.filter(AuditLog.action == action)
    page = query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).paginate(
        page=_page(), per_page=50, error_out=False
    )
    return jsonify(
        {
            "ok": True,
            "logs": [
                {
                    "action": entry.action,
                    "performed_by": entry.performed_by_email,
                    "role": entry.performed_by_role,
                    "target_type": entry.target_type,
                    "target_id": entry.target_id,
                    "target_name": entry.target_name,
                    "details": entry.details,
                    "note": entry.note,
                    "timestamp": entry.timestamp.isoformat(),
                }
                for entry in page.items
            ],
            "page": page.page,
            "pages": page.pages,
        }
    )


@admin_bp.route("/locations/reload", methods=["POST"])
@superadmin_required
def reload_locations():
    _validated(FlaskForm())
    hierarchy = get_hierarchy()
    loaded = hierarchy.reload()
    catalogue = get_catalogue()
    if catalogue.path:
        catalogue.reload()
    record_audit(current_user, "locations_reloaded", "Other", None, {"ok": loaded, "path": hierarchy.path})
    db.session.commit()
    if not loaded:
        return jsonify({"ok": False, "error": "Location data could not be loaded"}), 500
    return jsonify({"ok": True, "states": hierarchy.states()})
