"""Security helpers for headers, OTP/token material and password policy."""
import hashlib
import hmac
import secrets

from flask import request

PASSWORD_SYMBOLS = "!@#$%^&*()-_=+[]{}|;:,.<>?/~`'\"\\"


def apply_security_headers(response, force_https: bool = False):
    """Apply security headers suitable for an API that also streams PDF documents."""
    csp = (
        "default-src 'self'; "
        "img-src 'self' data:; "
        "style-src 'self' 'unsafe-inline'; "
        "frame-ancestors 'self';"
    )
    response.headers.setdefault("Content-Security-Policy", csp)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    if force_https or request.is_secure:
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    return response


def generate_token(length: int = 32) -> str:
    return secrets.token_urlsafe(length)


def generate_otp(length: int = 6) -> str:
    digits = "0123456789"
    return "".join(secrets.choice(digits) for _ in range(length))


def hash_value(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def matches_hash(value: str, expected_hash: str | None) -> bool:
    if not value or not expected_hash:
        return False
    return hmac.compare_digest(hash_value(value), expected_hash)


def password_meets_policy(password: str) -> tuple[bool, str | None]:
    """Administrator password baseline."""
    password = password or ""
    if len(password) < 8:
        return False, "Password must be at least 8 characters long."
    if not any(c.isupper() for c in password):
        return False, "Include at least one uppercase letter."
    if not any(c.islower() for c in password):
        return False, "Include at least one lowercase letter."
    if not any(c.isdigit() for c in password):
        return False, "Include at least one digit."
    if not any(c in PASSWORD_SYMBOLS for c in password):
        return False, "Include at least one symbol."
    return True, None


def within_rate_limit(count: int, limit: int) -> bool:
    """True while ``count`` prior attempts in the current window still leave room for one more."""
    return count < limit


def client_ip() -> str | None:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()[:64]
    return request.remote_addr
