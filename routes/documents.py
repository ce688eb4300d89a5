"""Public, OTP-gated download of member documents."""
import io

from flask import Blueprint, jsonify, redirect, request, send_file, url_for
from flask_wtf import FlaskForm
from wtforms import StringField
from wtforms.validators import DataRequired, Email, Length, Optional

from utils import download_otp
from utils.errors import raise_for_form
from utils.security import client_ip

documents_bp = Blueprint("documents", __name__, url_prefix="/documents")


class RequestDownloadForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(message="Email is required"), Email(), Length(max=255)])
    name = StringField("Full name", validators=[Optional(), Length(max=150)])


class VerifyOtpForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    otp = StringField("OTP", validators=[DataRequired(), Length(min=4, max=10)])


class GenerateForm(FlaskForm):
    token = StringField("Token", validators=[DataRequired(message="Token required")])
    type = StringField("Document", validators=[DataRequired()])


@documents_bp.route("/request-download", methods=["GET"])
def request_download_page():
    return jsonify({"ok": True, "email": request.args.get("email", "")})


@documents_bp.route("/request-download", methods=["POST"])
def request_download():
    form = RequestDownloadForm()
    if not form.validate_on_submit():
        raise_for_form(form)
    message = download_otp.request_download(form.email.data, form.name.data, ip_address=client_ip())
    return jsonify({"ok": True, "message": message})


@documents_bp.route("/verify-otp", methods=["POST"])
def verify_otp():
    form = VerifyOtpForm()
    if not form.validate_on_submit():
        raise_for_form(form)
    token = download_otp.verify_otp(form.email.data, form.otp.data)
    return redirect(url_for("documents.profile", token=token))


@documents_bp.route("/profile")
def profile():
    snapshot = download_otp.profile_snapshot(request.args.get("token"))
    return jsonify({"ok": True, "member": snapshot})


@documents_bp.route("/generate", methods=["POST"])
def generate():
    form = GenerateForm()
    if not form.validate_on_submit():
        raise_for_form(form)
    filename, data = download_otp.generate_document(form.token.data, form.type.data)
    response = send_file(
        io.BytesIO(data),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )
    response.headers["Cache-Control"] = "no-store"
    return response
