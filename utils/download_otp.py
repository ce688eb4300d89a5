"""Email-OTP gate in front of member document downloads.

request -> verify -> profile (token) -> generate (token). OTPs and tokens are stored only as SHA-256
hashes. Expiry is checked against the wall clock on every lookup; :func:`purge_expired` only keeps the
table small.
"""
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from flask import current_app
from sqlalchemy import delete, func, or_, select, update

from extensions import db
from models import DOCUMENT_TYPES, DownloadOtp, Membership, MembershipHistory
from utils import email_service, pdf_generator
from utils.audit import record_audit
from utils.email_service import EmailDeliveryError
from utils.errors import ExternalServiceError, NotFoundError, RateLimitError, ValidationError
from utils.security import generate_otp, generate_token, hash_value, matches_hash, within_rate_limit

INVALID_OTP_MESSAGE = "Invalid or expired OTP"
INVALID_TOKEN_MESSAGE = "Invalid or expired token"
REQUEST_ACCEPTED_MESSAGE = "If a membership exists for this email, a code has been sent to it."


def _normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _names_match(given: str | None, on_file: str | None) -> bool:
    if not given or not given.strip():
        return True
    return (on_file or "").strip().casefold() == given.strip().casefold()


def _requests_in_window(email: str, now: datetime) -> int:
    window = timedelta(minutes=int(current_app.config.get("OTP_REQUEST_WINDOW_MINUTES", 60)))
    return db.session.execute(
        select(func.count(DownloadOtp.id)).where(DownloadOtp.email == email, DownloadOtp.created_at >= now - window)
    ).scalar_one()


def member_for_email(email: str) -> Optional[Membership]:
    """Newest accepted membership registered under ``email``."""
    return (
        Membership.query.filter(Membership.email == email, Membership.status == "accepted")
        .order_by(Membership.updated_at.desc(), Membership.created_at.desc())
        .first()
    )


def request_download(email: str | None, name: str | None = None, ip_address: str | None = None) -> str:
    """Issue and mail a fresh OTP.

    Unknown emails and name mismatches get the same answer as a successful request so the endpoint
    cannot be used to probe which addresses are registered.
    """
    email = _normalize_email(email)
    if not email:
        raise ValidationError("Email is required")

    now = datetime.utcnow()
    limit = int(current_app.config.get("OTP_REQUESTS_PER_WINDOW", 5))
    if not within_rate_limit(_requests_in_window(email, now), limit):
        current_app.logger.warning("Download OTP throttled", extra={"email": email, "ip": ip_address})
        raise RateLimitError()

    member = member_for_email(email)
    if member is None or not _names_match(name, member.full_name):
        current_app.logger.info(
            "Download OTP not issued",
            extra={"email": email, "reason": "no_member" if member is None else "name_mismatch"},
        )
        return REQUEST_ACCEPTED_MESSAGE

    otp = generate_otp(int(current_app.config.get("OTP_LENGTH", 6)))
    # Only the newest code for an email can be verified.
    db.session.execute(
        update(DownloadOtp)
        .where(DownloadOtp.email == email, DownloadOtp.verified.is_(False), DownloadOtp.expires_at > now)
        .values(expires_at=now)
        .execution_options(synchronize_session=False)
    )
    record = DownloadOtp(
        email=email,
        membership_ref=member.id,
        otp_hash=hash_value(otp),
        expires_at=now + timedelta(minutes=int(current_app.config.get("OTP_TTL_MINUTES", 10))),
        created_at=now,
        ip_address=ip_address,
    )
    db.session.add(record)
    record_audit(
        None,
        "download_otp_requested",
        "Membership",
        member.id,
        {"email": email, "membership_id": member.membership_id},
        f"Download OTP requested for {email}",
        member.full_name,
    )
    db.session.commit()

    try:
        email_service.send_download_otp_email(email, member.full_name, otp)
    except EmailDeliveryError as exc:
        current_app.logger.error("Download OTP email not sent", extra={"email": email, "error": str(exc)})
    return REQUEST_ACCEPTED_MESSAGE


def _latest_live_otp(email: str, now: datetime) -> Optional[DownloadOtp]:
    """Newest unverified code for ``email``, or None when that code is no longer live."""
    record = (
        DownloadOtp.query.filter(DownloadOtp.email == email, DownloadOtp.verified.is_(False))
        .order_by(DownloadOtp.created_at.desc(), DownloadOtp.id.desc())
        .first()
    )
    if record is None or not record.otp_is_live(now):
        return None
    return record


def _spend_attempt(record: DownloadOtp, now: datetime) -> None:
    max_attempts = int(current_app.config.get("OTP_MAX_VERIFY_ATTEMPTS", 5))
    values = {"verify_attempts": DownloadOtp.verify_attempts + 1}
    if record.verify_attempts + 1 >= max_attempts:
        values["expires_at"] = now
    db.session.execute(
        update(DownloadOtp)
        .where(DownloadOtp.id == record.id, DownloadOtp.verified.is_(False))
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def verify_otp(email: str | None, otp: str | None) -> str:
    """Exchange a live OTP for a download token. Returns the raw token; only its hash is stored."""
    email = _normalize_email(email)
    otp = (otp or "").strip()
    if not email or not otp:
        raise ValidationError("Email and OTP are required")

    now = datetime.utcnow()
    record = _latest_live_otp(email, now)
    if record is None or not matches_hash(otp, record.otp_hash):
        if record is not None:
            _spend_attempt(record, now)
        record_audit(
            None,
            "download_otp_rejected",
            "Membership",
            record.membership_ref if record is not None else None,
            {"email": email},
        )
        db.session.commit()
        raise ValidationError(INVALID_OTP_MESSAGE)

    token = generate_token(32)
    claimed = db.session.execute(
        update(DownloadOtp)
        .where(
            DownloadOtp.id == record.id,
            DownloadOtp.verified.is_(False),
            DownloadOtp.expires_at > now,
        )
        .values(
            verified=True,
            verified_at=now,
            token_hash=hash_value(token),
            token_expires=now + timedelta(minutes=int(current_app.config.get("TOKEN_TTL_MINUTES", 15))),
        )
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.session.rollback()
        raise ValidationError(INVALID_OTP_MESSAGE)

    record_audit(None, "download_otp_verified", "Membership", record.membership_ref, {"email": email})
    db.session.commit()
    return token


def resolve_token(token: str | None) -> Tuple[DownloadOtp, Membership]:
    """Validate a download token against the wall clock and load a fresh copy of its membership."""
    token = (token or "").strip()
    if not token:
        raise ValidationError("Token required")
    now = datetime.utcnow()
    record = DownloadOtp.query.filter(DownloadOtp.token_hash == hash_value(token)).first()
    if record is None or not record.token_is_live(now):
        raise ValidationError(INVALID_TOKEN_MESSAGE)

    membership = db.session.get(Membership, record.membership_ref, populate_existing=True) if record.membership_ref else None
    if membership is None:
        raise NotFoundError("Membership not found")
    return record, membership


def profile_snapshot(token: str | None) -> Dict:
    _, membership = resolve_token(token)
    role = membership.current_role
    return {
        "full_name": membership.full_name,
        "father_name": membership.father_name,
        "email": membership.email,
        "mobile": membership.mobile,
        "membership_id": membership.membership_id,
        "status": membership.status,
        "district": membership.district,
        "block": membership.block,
        "designation": membership.designation,
        "role": role.public_payload() if role else None,
        "documents": list(DOCUMENT_TYPES),
    }


def _record_generation_failure(record: DownloadOtp, membership: Membership, doc_type: str, error: Exception) -> None:
    action = "joining_pdf_error" if doc_type == "joining" else "idcard_pdf_error"
    try:
        db.session.add(MembershipHistory(membership_ref=membership.id, action=action, note=str(error)[:1000]))
        record_audit(
            None,
            "document_download_failed",
            "Document",
            membership.id,
            {"type": doc_type, "email": record.email, "error": str(error)},
            None,
            membership.full_name,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.warning("Download failure not recorded", extra={"membership": membership.id})


def generate_document(token: str | None, doc_type: str | None) -> Tuple[str, bytes]:
    """Render the requested document for the token holder. Returns ``(filename, pdf_bytes)``."""
    if doc_type not in DOCUMENT_TYPES:
        raise ValidationError("Invalid document type")
    record, membership = resolve_token(token)
    if membership.status != "accepted":
        raise NotFoundError("Membership not found")

    qr_payload = email_service.verification_url(membership.membership_id or membership.id)
    try:
        if doc_type == "joining":
            member = pdf_generator.member_snapshot(membership)
            data = pdf_generator.render_with_retry(
                pdf_generator.render_joining_letter, member, qr_payload, pdf_generator.org_context(), label="joining_letter"
            )
            filename = email_service.joining_letter_filename(membership.membership_id or membership.id)
        else:
            data = pdf_generator.build_id_card(membership, qr_payload)
            filename = email_service.id_card_filename(membership.membership_id or membership.id)
    except (pdf_generator.PdfRenderError, ExternalServiceError) as exc:
        current_app.logger.error(
            "Document generation failed",
            extra={"membership": membership.id, "type": doc_type, "error": str(exc)},
        )
        _record_generation_failure(record, membership, doc_type, exc)
        raise ExternalServiceError() from exc

    record_audit(
        None,
        "joining_letter_downloaded" if doc_type == "joining" else "id_card_downloaded",
        "Document",
        membership.id,
        {
            "membership_id": membership.membership_id,
            "email": record.email,
            "type": doc_type,
            "file_name": filename,
            "file_size": len(data),
        },
        f"Downloaded by {record.email}",
        membership.full_name,
    )
    db.session.commit()
    return filename, data


def purge_expired(now: datetime | None = None) -> int:
    """Delete rows whose OTP and token are both past use. Returns the number removed.

    Rows still inside the request throttle window are kept, since they are what the throttle counts.
    """
    now = now or datetime.utcnow()
    window = timedelta(minutes=int(current_app.config.get("OTP_REQUEST_WINDOW_MINUTES", 60)))
    result = db.session.execute(
        delete(DownloadOtp)
        .where(
            DownloadOtp.created_at < now - window,
            or_(
                DownloadOtp.verified.is_(False) & (DownloadOtp.expires_at <= now),
                DownloadOtp.verified.is_(True)
                & or_(DownloadOtp.token_expires.is_(None), DownloadOtp.token_expires <= now),
            ),
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount
