"""SMTP-backed mailer for applicant, member and administrator notifications.

Every send is best-effort: delivery failures are logged and reported through the optional callbacks,
never raised into the state transition that triggered the mail. With ``MAIL_ASYNC`` enabled the SMTP
round-trip runs on a daemon thread inside its own app context.
"""
import smtplib
import ssl
import threading
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlencode

from flask import current_app

from utils.markdown_formatter import (
    format_acceptance_markdown,
    format_claim_markdown,
    format_download_otp_markdown,
    format_password_reset_markdown,
    format_rejection_markdown,
    format_resend_markdown,
    format_role_assignment_markdown,
    markdown_to_email_html,
    markdown_to_plaintext,
)

Attachment = Tuple[str, bytes, str]


class EmailDeliveryError(Exception):
    """Raised when email dispatch fails."""


def _resolve_sender() -> str:
    return current_app.config.get("MAIL_DEFAULT_SENDER") or current_app.config.get("MAIL_USERNAME") or ""


def _build_message(subject: str, text_body: str, html_body: str, sender: str, recipients: List[str], attachments: List[Attachment]) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = ", ".join(recipients)
    msg["Reply-To"] = sender
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid()
    msg.set_content(text_body)
    msg.add_alternative(html_body, subtype="html")

    for filename, payload, mime_type in attachments:
        maintype, subtype = (mime_type.split("/", 1) if "/" in mime_type else ("application", "octet-stream"))
        msg.add_attachment(payload, maintype=maintype, subtype=subtype, filename=filename)
    return msg


def _dispatch_email(msg: EmailMessage) -> str:
    if current_app.config.get("MAIL_BACKEND") == "console":
        current_app.logger.info(
            "Console mail backend: message not sent",
            extra={"to": msg["To"], "subject": msg["Subject"], "message_id": msg["Message-ID"]},
        )
        return msg["Message-ID"]

    host = current_app.config.get("MAIL_SERVER")
    port = int(current_app.config.get("MAIL_PORT", 25))
    username = current_app.config.get("MAIL_USERNAME")
    password = current_app.config.get("MAIL_PASSWORD")
    use_tls = bool(current_app.config.get("MAIL_USE_TLS"))
    use_ssl = bool(current_app.config.get("MAIL_USE_SSL"))
    timeout = int(current_app.config.get("MAIL_TIMEOUT_SECONDS", 10))

    if not host:
        raise EmailDeliveryError("MAIL_SERVER is not configured")

    try:
        if use_ssl:
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(host, port, context=context, timeout=timeout) as server:
                if username and password:
                    server.login(username, password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(host, port, timeout=timeout) as server:
                server.ehlo()
                if use_tls:
                    server.starttls(context=ssl.create_default_context())
                if username and password:
                    server.login(username, password)
                server.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:  # pragma: no cover - external I/O
        raise EmailDeliveryError(str(exc)) from exc
    return msg["Message-ID"]


def _deliver(
    msg: EmailMessage,
    on_success: Optional[Callable[[str], None]],
    on_failure: Optional[Callable[[Exception], None]],
) -> Optional[str]:
    try:
        message_id = _dispatch_email(msg)
    except EmailDeliveryError as exc:
        current_app.logger.error("Email delivery failed", extra={"to": msg["To"], "subject": msg["Subject"], "error": str(exc)})
        if on_failure:
            on_failure(exc)
        return None
    if on_success:
        on_success(message_id)
    return message_id


def _deliver_in_context(app, msg, on_success, on_failure) -> None:
    with app.app_context():
        try:
            _deliver(msg, on_success, on_failure)
        except Exception:
            app.logger.exception("Background mail task crashed", extra={"to": msg["To"]})


def send(
    to: str,
    subject: str,
    markdown_body: str,
    attachments: List[Attachment] | None = None,
    on_success: Optional[Callable[[str], None]] = None,
    on_failure: Optional[Callable[[Exception], None]] = None,
) -> Optional[str]:
    """Send one message. Returns the Message-ID when delivered synchronously, else None."""
    if not to:
        raise EmailDeliveryError("No recipient for email dispatch")
    text_body = markdown_to_plaintext(markdown_body)
    html_body = markdown_to_email_html(markdown_body)
    msg = _build_message(subject, text_body, html_body, _resolve_sender(), [to], attachments or [])

    if current_app.config.get("MAIL_ASYNC"):
        app = current_app._get_current_object()
        worker = threading.Thread(
            target=_deliver_in_context,
            args=(app, msg, on_success, on_failure),
            name="mail-dispatch",
            daemon=True,
        )
        worker.start()
        return None
    return _deliver(msg, on_success, on_failure)


def _org_name() -> str:
    return current_app.config.get("ORG_NAME", "RMAS")


def verification_url(membership_id: str) -> str:
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/")
    return f"{base}/verify/{membership_id}"


def download_page_url() -> str:
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/")
    return f"{base}/documents/request-download"


def send_download_otp_email(recipient: str, full_name: str, otp: str) -> Optional[str]:
    ttl = int(current_app.config.get("OTP_TTL_MINUTES", 10))
    body = format_download_otp_markdown(full_name, otp, ttl, _org_name())
    return send(recipient, "Your document download code", body)


def send_claim_email(membership, officer_name: str) -> Optional[str]:
    body = format_claim_markdown(membership.full_name, officer_name, _org_name())
    return send(membership.email, "Your application is now being processed", body)


def send_acceptance_email(membership, letter: bytes | None, on_success=None, on_failure=None) -> Optional[str]:
    body = format_acceptance_markdown(
        membership.full_name,
        membership.membership_id,
        verification_url(membership.membership_id),
        _org_name(),
        has_letter=letter is not None,
    )
    attachments = [(joining_letter_filename(membership.membership_id), letter, "application/pdf")] if letter else []
    return send(membership.email, "Your membership has been approved", body, attachments, on_success, on_failure)


def send_rejection_email(membership, note: str | None) -> Optional[str]:
    body = format_rejection_markdown(membership.full_name, note, _org_name())
    return send(membership.email, "Update on your membership application", body)


def send_role_assignment_email(membership, assignment, on_success=None, on_failure=None) -> Optional[str]:
    body = format_role_assignment_markdown(
        membership.full_name,
        assignment.role_name or assignment.role_code,
        assignment.level,
        assignment.location,
        f"{download_page_url()}?{urlencode({'email': membership.email})}",
        _org_name(),
    )
    return send(membership.email, "New responsibility assigned", body, None, on_success, on_failure)


def send_resend_email(membership, letter: bytes, on_success=None, on_failure=None) -> Optional[str]:
    body = format_resend_markdown(membership.full_name, membership.membership_id, _org_name())
    attachments = [(joining_letter_filename(membership.membership_id), letter, "application/pdf")]
    return send(membership.email, "Your joining letter", body, attachments, on_success, on_failure)


def send_password_reset_email(user, otp: str) -> Optional[str]:
    ttl = int(current_app.config.get("OTP_TTL_MINUTES", 10))
    body = format_password_reset_markdown(user.name, otp, ttl, _org_name())
    return send(user.email, "Password reset code", body)


def _safe_id(membership_id: str | None) -> str:
    return (membership_id or "").replace("/", "_")


def joining_letter_filename(membership_id: str | None) -> str:
    return f"RMAS_Joining_{_safe_id(membership_id)}.pdf"


def id_card_filename(membership_id: str | None) -> str:
    return f"RMAS_IDCard_{_safe_id(membership_id)}.pdf"
