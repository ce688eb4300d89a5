"""Administrator accounts: provisioning under the descent-only rule, and the password flows."""
from datetime import datetime, timedelta
from typing import List, Optional

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import Membership, RoleAssignment, User
from utils import email_service
from utils.audit import record_audit, record_denial
from utils.cascade import can_create_user, can_delete_user, can_manage_user
from utils.email_service import EmailDeliveryError
from utils.errors import AuthorizationError, NotFoundError, RateLimitError, ValidationError
from utils.locations import LocationLookupError, get_hierarchy
from utils.roles import parse_role
from utils.security import generate_otp, hash_value, matches_hash, password_meets_policy, within_rate_limit

RESET_REQUEST_MESSAGE = "If the account exists, a reset code has been sent to its email."
INVALID_RESET_MESSAGE = "Invalid or expired OTP"


def _load_user(user_id: str) -> User:
    user = db.session.get(User, user_id) if user_id else None
    if user is None:
        raise NotFoundError("User not found")
    return user


def _resolve_assignment(role_code: str, assigned_level: str | None, assigned_id: str | None) -> tuple:
    try:
        role = parse_role(role_code)
    except ValueError as exc:
        raise ValidationError("Invalid role selected") from exc
    if role.is_superadmin:
        return role, None, None
    if not assigned_level or not assigned_id:
        raise ValidationError("Level and assigned entity are required for non-superadmin roles")
    if assigned_level != role.level:
        raise ValidationError(f"Role {role.code} must be assigned at {role.level} level")
    try:
        canonical = get_hierarchy().canonical(assigned_level, assigned_id)
    except LocationLookupError as exc:
        raise ValidationError("Location data is temporarily unavailable") from exc
    if canonical is None:
        raise ValidationError("Unknown location for the selected level")
    return role, assigned_level, canonical


def _check_password(password: str | None) -> None:
    ok, reason = password_meets_policy(password or "")
    if not ok:
        raise ValidationError(reason)


def _may_provision(actor: User, role, level: str | None, entity: str | None) -> bool:
    if role.is_superadmin:
        return actor.is_superadmin
    return can_create_user(actor, level, entity)


def list_users(actor: User) -> List[User]:
    users = User.query.order_by(User.created_at.desc()).all()
    if actor.is_superadmin:
        return users
    return [user for user in users if user.id == actor.id or can_manage_user(actor, user)]


def create_user(
    actor: User,
    name: str,
    email: str,
    password: str,
    role: str,
    assigned_level: str | None = None,
    assigned_id: str | None = None,
    active: bool = True,
) -> User:
    email = (email or "").strip().lower()
    name = (name or "").strip()
    if not name or not email or not role:
        raise ValidationError("Name, email and role are required")
    role_spec, level, entity = _resolve_assignment(role, assigned_level, assigned_id)
    if not _may_provision(actor, role_spec, level, entity):
        record_denial(actor, "create_user", "User", None)
        raise AuthorizationError()
    _check_password(password)
    if User.query.filter_by(email=email).first():
        raise ValidationError("User with this email already exists")

    user = User(
        name=name,
        email=email,
        role=role_spec.code,
        assigned_level=level,
        assigned_id=entity,
        active=bool(active),
        password_changed=False,
        created_by_id=actor.id,
    )
    user.set_password(password)
    db.session.add(user)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ValidationError("User with this email already exists") from exc
    record_audit(
        actor,
        "user_created",
        "User",
        user.id,
        {"role": user.role, "assigned_level": level, "assigned_id": entity},
        None,
        f"{user.name} ({user.email})",
    )
    db.session.commit()
    current_app.logger.info("Administrator created", extra={"user_id": user.id, "role": user.role, "by": actor.id})
    return user


def update_user(
    actor: User,
    user_id: str,
    name: str | None = None,
    role: str | None = None,
    assigned_level: str | None = None,
    assigned_id: str | None = None,
    active: bool | None = None,
    password: str | None = None,
) -> User:
    target = _load_user(user_id)
    if not can_manage_user(actor, target):
        record_denial(actor, "edit_user", "User", target.id)
        raise AuthorizationError()

    changes = {}
    if role is not None:
        role_spec, level, entity = _resolve_assignment(role, assigned_level, assigned_id)
        if not _may_provision(actor, role_spec, level, entity):
            record_denial(actor, "edit_user", "User", target.id)
            raise AuthorizationError()
        if (target.role, target.assigned_level, target.assigned_id) != (role_spec.code, level, entity):
            changes["role"] = [target.role, role_spec.code]
            changes["assignment"] = [f"{target.assigned_level}:{target.assigned_id}", f"{level}:{entity}"]
            target.role, target.assigned_level, target.assigned_id = role_spec.code, level, entity
    if name and name.strip() and name.strip() != target.name:
        changes["name"] = [target.name, name.strip()]
        target.name = name.strip()
    if password:
        _check_password(password)
        target.set_password(password)
        target.password_changed = False
        changes["password"] = "reset"

    toggled = None
    if active is not None and bool(active) != target.active:
        target.active = bool(active)
        toggled = "user_reactivated" if target.active else "user_deactivated"

    record_audit(actor, "user_edited", "User", target.id, changes, None, f"{target.name} ({target.email})")
    if toggled:
        record_audit(actor, toggled, "User", target.id, {}, None, f"{target.name} ({target.email})")
    db.session.commit()
    return target


def delete_user(actor: User, user_id: str) -> None:
    target = _load_user(user_id)
    if not can_delete_user(actor, target):
        record_denial(actor, "delete_user", "User", target.id)
        raise AuthorizationError()

    label = f"{target.name} ({target.email})"
    # Pending claims go back to the pool; past role grants keep their text but lose the link.
    db.session.execute(
        update(Membership).where(Membership.assigned_to_id == target.id).values(assigned_to_id=None)
    )
    db.session.execute(
        update(RoleAssignment).where(RoleAssignment.assigned_by_id == target.id).values(assigned_by_id=None)
    )
    db.session.execute(update(User).where(User.created_by_id == target.id).values(created_by_id=None))
    record_audit(actor, "user_deleted", "User", target.id, {"email": target.email, "role": target.role}, None, label)
    db.session.delete(target)
    db.session.commit()
    current_app.logger.info("Administrator deleted", extra={"user_id": user_id, "by": actor.id})


# --- sign in and passwords ------------------------------------------------------------------------


def authenticate(email: str | None, password: str | None) -> Optional[User]:
    user = User.query.filter_by(email=(email or "").strip().lower()).first()
    if user is None or not user.check_password(password or ""):
        return None
    return user


def record_login(user: User) -> None:
    user.last_login_at = datetime.utcnow()
    record_audit(user, "login", "User", user.id)
    db.session.commit()


def request_password_reset(email: str | None) -> str:
    """Mail a reset OTP. At most ``OTP_REQUESTS_PER_WINDOW`` requests per user per window."""
    user = User.query.filter_by(email=(email or "").strip().lower()).first()
    if user is None or not user.active:
        return RESET_REQUEST_MESSAGE

    config = current_app.config
    now = datetime.utcnow()
    window = timedelta(minutes=int(config.get("OTP_REQUEST_WINDOW_MINUTES", 60)))
    if user.otp_last_request_at is None or now - user.otp_last_request_at > window:
        user.otp_request_count = 0
    if not within_rate_limit(user.otp_request_count, int(config.get("OTP_REQUESTS_PER_WINDOW", 5))):
        current_app.logger.warning("Password reset throttled", extra={"user_id": user.id})
        raise RateLimitError()

    otp = generate_otp(int(config.get("OTP_LENGTH", 6)))
    user.otp_hash = hash_value(otp)
    user.otp_expiry = now + timedelta(minutes=int(config.get("OTP_TTL_MINUTES", 10)))
    user.otp_attempts = 0
    user.otp_request_count = (user.otp_request_count or 0) + 1
    if user.otp_request_count == 1:
        user.otp_last_request_at = now
    record_audit(user, "forgot_password", "User", user.id)
    db.session.commit()

    try:
        email_service.send_password_reset_email(user, otp)
    except EmailDeliveryError as exc:
        current_app.logger.error("Password reset email not sent", extra={"user_id": user.id, "error": str(exc)})
    return RESET_REQUEST_MESSAGE


def _clear_reset_otp(user: User) -> None:
    user.otp_hash = None
    user.otp_expiry = None
    user.otp_attempts = 0


def reset_password(email: str | None, otp: str | None, new_password: str | None) -> User:
    user = User.query.filter_by(email=(email or "").strip().lower()).first()
    now = datetime.utcnow()
    if user is None or not user.otp_hash or not user.otp_expiry or user.otp_expiry <= now:
        raise ValidationError(INVALID_RESET_MESSAGE)
    if not matches_hash((otp or "").strip(), user.otp_hash):
        user.otp_attempts = (user.otp_attempts or 0) + 1
        if user.otp_attempts >= int(current_app.config.get("OTP_MAX_VERIFY_ATTEMPTS", 5)):
            _clear_reset_otp(user)
        db.session.commit()
        raise ValidationError(INVALID_RESET_MESSAGE)
    _check_password(new_password)

    user.set_password(new_password)
    user.password_changed = True
    _clear_reset_otp(user)
    record_audit(user, "password_reset_via_otp", "User", user.id)
    db.session.commit()
    return user


def change_password(user: User, current_password: str | None, new_password: str | None, confirm_password: str | None) -> None:
    if not new_password or not confirm_password:
        raise ValidationError("New password and confirmation are required")
    if new_password != confirm_password:
        raise ValidationError("New passwords do not match")
    # First login after provisioning skips the current password check.
    if user.password_changed and not user.check_password(current_password or ""):
        raise ValidationError("Current password is incorrect")
    _check_password(new_password)

    user.set_password(new_password)
    user.password_changed = True
    record_audit(user, "password_changed", "User", user.id)
    db.session.commit()
