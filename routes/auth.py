"""Administrator sign-in and password blueprint."""
from datetime import timedelta

from flask import Blueprint, current_app, jsonify, session
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf import FlaskForm
from wtforms import BooleanField, PasswordField, StringField
from wtforms.validators import DataRequired, Email, Length

from extensions import db
from utils import user_service
from utils.audit import record_audit
from utils.errors import raise_for_form

auth_bp = Blueprint("auth", __name__)


class LoginForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired()])
    remember_me = BooleanField("Remember me")


class ForgotPasswordForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])


class ResetPasswordForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    otp = StringField("OTP", validators=[DataRequired(), Length(min=4, max=10)])
    new_password = PasswordField("New password", validators=[DataRequired()])


class ChangePasswordForm(FlaskForm):
    current_password = PasswordField("Current password")
    new_password = PasswordField("New password", validators=[DataRequired()])
    confirm_password = PasswordField("Confirm password", validators=[DataRequired()])


@auth_bp.route("/login", methods=["POST"])
def login():
    form = LoginForm()
    if not form.validate_on_submit():
        raise_for_form(form)

    user = user_service.authenticate(form.email.data, form.password.data)
    if user is None:
        current_app.logger.warning("Failed login", extra={"email": form.email.data})
        return jsonify({"ok": False, "error": "Invalid credentials provided."}), 401
    if not user.active:
        return jsonify({"ok": False, "error": "Your account is inactive. Please contact your administrator."}), 403

    login_user(user, remember=bool(form.remember_me.data), duration=timedelta(days=7))
    session.permanent = True
    user_service.record_login(user)
    return jsonify(
        {
            "ok": True,
            "user": user.public_payload(),
            "password_change_required": not user.password_changed,
        }
    )


@auth_bp.route("/logout")
@login_required
def logout():
    user = current_user._get_current_object()
    logout_user()
    session.clear()
    record_audit(user, "logout", "User", user.id)
    db.session.commit()
    return jsonify({"ok": True})


@auth_bp.route("/forgot-password", methods=["POST"])
def forgot_password():
    form = ForgotPasswordForm()
    if not form.validate_on_submit():
        raise_for_form(form)
    message = user_service.request_password_reset(form.email.data)
    return jsonify({"ok": True, "message": message})


@auth_bp.route("/reset-password", methods=["POST"])
def reset_password():
    form = ResetPasswordForm()
    if not form.validate_on_submit():
        raise_for_form(form)
    user_service.reset_password(form.email.data, form.otp.data, form.new_password.data)
    return jsonify({"ok": True, "message": "Password updated. You can now sign in."})


@auth_bp.route("/change-password", methods=["POST"])
@login_required
def change_password():
    form = ChangePasswordForm()
    if not form.validate_on_submit():
        raise_for_form(form)
    user_service.change_password(
        current_user, form.current_password.data, form.new_password.data, form.confirm_password.data
    )
    return jsonify({"ok": True, "message": "Password changed successfully!"})
