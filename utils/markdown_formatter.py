"""Markdown bodies for member and administrator mail, rendered to sanitized HTML and plaintext."""
import re
from typing import Dict, List

import bleach
from markdown_it import MarkdownIt


# Single parser reused for performance; HTML disabled for safety
_md = MarkdownIt("commonmark", {"linkify": True, "typographer": True, "html": False}).enable(["linkify", "table"])

EMAIL_ALLOWED_TAGS = [
    "p",
    "ul",
    "ol",
    "li",
    "strong",
    "em",
    "h1",
    "h2",
    "h3",
    "h4",
    "table",
    "thead",
    "tbody",
    "tr",
    "th",
    "td",
    "hr",
    "a",
    "br",
    "code",
]

ALLOWED_ATTRIBUTES = {
    "a": ["href", "title", "rel", "target"],
    "th": ["colspan", "rowspan", "align"],
    "td": ["colspan", "rowspan", "align"],
}


def _normalize_whitespace(text: str) -> str:
    cleaned = re.sub(r"[\r\t]+", " ", text or "")
    cleaned = re.sub(r" +", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def markdown_to_html(md_text: str) -> str:
    rendered = _md.render(_normalize_whitespace(md_text))
    return bleach.clean(rendered, tags=EMAIL_ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES, strip=True)


def markdown_to_email_html(md_text: str) -> str:
    safe_html = markdown_to_html(md_text)
    return (
        "<div style=\"font-family: 'Segoe UI', Arial, sans-serif; font-size: 14px; line-height: 1.6; color: #0f172a;\">"
        f"{safe_html}"
        "</div>"
    )


def markdown_to_plaintext(md_text: str) -> str:
    """Strip markup but keep paragraph breaks so codes and links stay readable."""
    rendered = markdown_to_html(md_text)
    rendered = re.sub(r"</(p|li|h[1-4]|tr)>", "\n", rendered)
    text_only = bleach.clean(rendered, tags=[], attributes={}, strip=True)
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text_only.splitlines()]
    return "\n".join(line for line in lines if line)


def format_sections(sections: List[Dict[str, object]]) -> str:
    """Build markdown from an ordered list of sections."""
    parts: List[str] = []
    for section in sections:
        title = _normalize_whitespace(str(section.get("title", "") or ""))
        if title:
            parts.append(f"## {title}")
        bullets = section.get("bullets") or []
        body = section.get("body") or ""
        if body:
            parts.append(_normalize_whitespace(str(body)))
        if isinstance(bullets, list):
            for bullet in bullets:
                if bullet is None:
                    continue
                bullet_text = _normalize_whitespace(str(bullet))
                if bullet_text:
                    parts.append(f"- {bullet_text}")
        parts.append("")
    return "\n\n".join([p for p in parts if p.strip()])


def _signature(org_name: str) -> Dict[str, object]:
    return {"body": f"Regards,  \n{org_name}"}


def format_download_otp_markdown(full_name: str, otp: str, ttl_minutes: int, org_name: str) -> str:
    return format_sections(
        [
            {
                "title": "Your document download code",
                "body": f"Hello {full_name}, use the code below to download your membership documents.",
                "bullets": [f"Code: **{otp}**", f"Valid for {ttl_minutes} minutes"],
            },
            {"bullets": ["If you did not request this code, ignore this email."]},
            _signature(org_name),
        ]
    )


def format_claim_markdown(full_name: str, officer_name: str, org_name: str) -> str:
    return format_sections(
        [
            {
                "title": "Your application is being processed",
                "body": f"Hello {full_name}, your membership application has been taken up by {officer_name}.",
            },
            _signature(org_name),
        ]
    )


def format_acceptance_markdown(full_name: str, membership_id: str, verify_url: str, org_name: str, has_letter: bool) -> str:
    bullets = [f"Membership ID: **{membership_id}**", f"Verify: {verify_url}"]
    if has_letter:
        bullets.append("Your joining letter is attached to this email.")
    else:
        bullets.append("Your joining letter will be available from the document download page.")
    return format_sections(
        [
            {
                "title": "Membership approved",
                "body": f"Congratulations {full_name}, your membership application has been accepted.",
                "bullets": bullets,
            },
            _signature(org_name),
        ]
    )


def format_rejection_markdown(full_name: str, note: str | None, org_name: str) -> str:
    return format_sections(
        [
            {
                "title": "Membership application update",
                "body": f"Hello {full_name}, we are unable to accept your membership application at this time.",
                "bullets": [f"Note: {note}" if note else None],
            },
            _signature(org_name),
        ]
    )


def format_role_assignment_markdown(
    full_name: str, role_name: str, level: str, location: str | None, download_url: str, org_name: str
) -> str:
    where = f"{level.capitalize()} ({location})" if location else level.capitalize()
    return format_sections(
        [
            {
                "title": "New responsibility assigned",
                "body": f"Hello {full_name}, you have been appointed to a new post.",
                "bullets": [f"Post: **{role_name}**", f"Level: {where}"],
            },
            {
                "title": "Download your documents",
                "body": "Your updated joining letter and ID card can be downloaded after confirming your email:",
                "bullets": [download_url],
            },
            _signature(org_name),
        ]
    )


def format_resend_markdown(full_name: str, membership_id: str, org_name: str) -> str:
    return format_sections(
        [
            {
                "title": "Your joining letter",
                "body": f"Hello {full_name}, as requested, your joining letter for membership {membership_id} is attached.",
            },
            _signature(org_name),
        ]
    )


def format_password_reset_markdown(name: str, otp: str, ttl_minutes: int, org_name: str) -> str:
    return format_sections(
        [
            {
                "title": "Password reset code",
                "body": f"Hello {name}, use this code to reset your administrator password.",
                "bullets": [f"Code: **{otp}**", f"Valid for {ttl_minutes} minutes"],
            },
            {"bullets": ["If you did not request a reset, contact your state office."]},
            _signature(org_name),
        ]
    )
