"""Blueprint registration and public routes: application intake, verification, reference data."""
from flask import Blueprint, current_app, jsonify, request
from flask_wtf import FlaskForm
from flask_wtf.csrf import generate_csrf
from wtforms import BooleanField, StringField, TextAreaField
from wtforms.validators import DataRequired, Email, Length, Optional, Regexp, ValidationError

from models import Membership
from utils import membership_service
from utils.errors import ExternalServiceError, raise_for_form
from utils.locations import LocationLookupError, get_hierarchy
from utils.roles import TEAM_TYPES
from .admin import admin_bp
from .auth import auth_bp
from .documents import documents_bp

main_bp = Blueprint("main", __name__)


class JoinForm(FlaskForm):
    full_name = StringField("Full name", validators=[DataRequired(), Length(min=2, max=150)])
    father_name = StringField("Father's name", validators=[Optional(), Length(max=150)])
    dob = StringField("Date of birth", validators=[Optional(), Regexp(r"^\d{4}-\d{2}-\d{2}$", message="Use YYYY-MM-DD")])
    gender = StringField("Gender", validators=[Optional(), Length(max=20)])
    mobile = StringField(
        "Mobile",
        validators=[DataRequired(), Regexp(r"^\+?[\d\s-]{6,20}$", message="Valid mobile number is required")],
    )
    email = StringField("Email", validators=[Optional(), Email(), Length(max=255)])
    blood_group = StringField("Blood group", validators=[Optional(), Length(max=8)])
    education = StringField("Education", validators=[Optional(), Length(max=120)])
    occupation = StringField("Occupation", validators=[Optional(), Length(max=120)])
    id_number = StringField("ID number", validators=[Optional(), Length(max=40)])
    house_no = StringField("House no.", validators=[Optional(), Length(max=60)])
    street = StringField("Street", validators=[Optional(), Length(max=150)])
    panchayat = StringField("Panchayat", validators=[Optional(), Length(max=120)])
    village = StringField("Village", validators=[Optional(), Length(max=120)])
    pincode = StringField("Pincode", validators=[Optional(), Regexp(r"^\d{6}$", message="Pincode must be 6 digits")])
    district = StringField("District", validators=[DataRequired(), Length(max=120)])
    block = StringField("Block", validators=[Optional(), Length(max=120)])
    team_type = StringField("Team", validators=[Optional()])
    photo_path = StringField("Photo", validators=[Optional(), Length(max=500)])
    documents_path = StringField("Documents", validators=[Optional(), Length(max=500)])
    reason = TextAreaField("Reason for joining", validators=[DataRequired(), Length(min=10, max=2000)])
    agree_terms = BooleanField("I agree to the terms", validators=[DataRequired()])

    def validate_mobile(self, field):
        digits = "".join(ch for ch in field.data or "" if ch.isdigit())
        if not 6 <= len(digits) <= 15:
            raise ValidationError("Valid mobile number is required")

    def validate_team_type(self, field):
        if field.data and field.data not in TEAM_TYPES:
            raise ValidationError("Invalid team type")


@main_bp.route("/health")
def health():
    hierarchy = current_app.extensions.get("location_hierarchy")
    return jsonify({"status": "ok", "locations": bool(hierarchy and hierarchy.available)})


@main_bp.route("/csrf-token")
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


@main_bp.route("/join", methods=["POST"])
def join():
    form = JoinForm()
    if not form.validate_on_submit():
        raise_for_form(form)
    data = {name: field.data for name, field in form._fields.items() if name != "csrf_token"}
    membership = membership_service.submit_application(data)
    return jsonify({"ok": True, "id": membership.id, "status": membership.status}), 201


@main_bp.route("/verify/<path:membership_id>")
def verify_membership(membership_id):
    membership = Membership.query.filter_by(membership_id=membership_id).first()
    if membership is None or membership.status != "accepted":
        return jsonify({"valid": False, "membership": None})
    return jsonify(
        {
            "valid": True,
            "membership": {
                "membership_id": membership.membership_id,
                "full_name": membership.full_name,
                "district": membership.district,
                "designation": membership.designation,
            },
        }
    )


def _location_lookup(fetch):
    try:
        return jsonify({"ok": True, "items": fetch(get_hierarchy())})
    except LocationLookupError as exc:
        current_app.logger.error("Location lookup failed", extra={"path": request.path, "error": str(exc)})
        raise ExternalServiceError("Location data is temporarily unavailable") from exc


@main_bp.route("/api/locations/divisions")
def location_divisions():
    state = request.args.get("state")

    def fetch(hierarchy):
        states = [state] if state else hierarchy.states()
        return [division for name in states for division in hierarchy.divisions_for_state(name)]

    return _location_lookup(fetch)


@main_bp.route("/api/locations/districts")
def location_districts():
    division = request.args.get("division", "")
    return _location_lookup(lambda hierarchy: hierarchy.get_districts_for_division(division))


@main_bp.route("/api/locations/blocks")
def location_blocks():
    district = request.args.get("district", "")
    return _location_lookup(lambda hierarchy: hierarchy.get_blocks_for_district(district))


__all__ = ["main_bp", "auth_bp", "admin_bp", "documents_bp"]
