"""Application lifecycle: public submission and every administrator action on a membership application.

Each state-changing operation follows the same order: load, authorize, check state, apply a single
conditional UPDATE (checked by rowcount), append exactly one history row, commit, then run the
best-effort side effects (PDF, mail) that may fail without undoing the committed transition.
"""
from datetime import date, datetime
from typing import Dict, List, Optional

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import Membership, MembershipHistory, MembershipSerial, RoleAssignment, User
from utils import email_service, pdf_generator
from utils.audit import record_audit, record_denial
from utils.cascade import (
    apply_scope,
    can_assign_role,
    can_assign_role_at_level,
    can_perform_actions,
    effective_location,
)
from utils.email_service import EmailDeliveryError
from utils.errors import (
    AuthorizationError,
    ConcurrencyConflictError,
    ExternalServiceError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from utils.locations import LocationLookupError, get_hierarchy
from utils.roles import LEVELS, TEAM_TYPES, get_catalogue


def _load(membership_id: str) -> Membership:
    membership = db.session.get(Membership, membership_id) if membership_id else None
    if membership is None:
        raise NotFoundError("Application not found")
    return membership


def _append_history(membership: Membership, actor: User | None, action: str, note: str | None = None) -> MembershipHistory:
    entry = MembershipHistory(
        membership_ref=membership.id,
        actor_id=actor.id if actor is not None else None,
        actor_role=actor.role if actor is not None else None,
        action=action,
        note=(note or "")[:1000] or None,
    )
    db.session.add(entry)
    return entry


def _deny(actor: User, operation: str, membership: Membership) -> None:
    record_denial(actor, operation, "Membership", membership.id)
    raise AuthorizationError()


def _authorize(actor: User, membership: Membership, operation: str) -> None:
    if not can_perform_actions(actor, membership):
        _deny(actor, operation, membership)


def _conditional_update(membership: Membership, *criteria, **values) -> bool:
    values.setdefault("updated_at", datetime.utcnow())
    result = db.session.execute(
        update(Membership)
        .where(Membership.id == membership.id, *criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        db.session.expire(membership)
        return True
    return False


def _history_callback(membership_pk: str, actor: User | None, action: str, describe):
    """Build a mail outcome callback that appends one history row in whatever context it runs."""
    actor_id = actor.id if actor is not None else None
    actor_role = actor.role if actor is not None else None

    def _record(outcome) -> None:
        try:
            db.session.add(
                MembershipHistory(
                    membership_ref=membership_pk,
                    actor_id=actor_id,
                    actor_role=actor_role,
                    action=action,
                    note=(describe(outcome) or "")[:1000],
                )
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.warning("Notification history not recorded", extra={"membership": membership_pk, "action": action})

    return _record


def _best_effort_mail(send_fn, *args, **kwargs) -> None:
    try:
        send_fn(*args, **kwargs)
    except EmailDeliveryError as exc:
        current_app.logger.warning("Notification skipped", extra={"error": str(exc)})


# --- submission -----------------------------------------------------------------------------------


def _parse_dob(value) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValidationError("Date of birth must be in YYYY-MM-DD format") from exc


def resolve_application_location(district: str | None, block: str | None = None) -> Dict[str, Optional[str]]:
    """Canonical state/division/district/block for a submission; division always comes from the district."""
    hierarchy = get_hierarchy()
    try:
        canonical_district = hierarchy.canonical("district", district)
        if canonical_district is None:
            raise ValidationError("Please select a valid district")
        canonical_block = None
        if block:
            if not hierarchy.block_in_district(block, canonical_district):
                raise ValidationError("Selected block does not belong to the district")
            canonical_block = next(
                b for b in hierarchy.get_blocks_for_district(canonical_district) if b.casefold() == block.strip().casefold()
            )
        return {
            "state": hierarchy.state_for("district", canonical_district),
            "division": hierarchy.division_for_district(canonical_district),
            "district": canonical_district,
            "block": canonical_block,
            "level": "block" if canonical_block else "district",
        }
    except LocationLookupError as exc:
        current_app.logger.error("Submission rejected: location hierarchy unavailable", extra={"error": str(exc)})
        raise ExternalServiceError("Location data is temporarily unavailable") from exc


def submit_application(data: Dict) -> Membership:
    location = resolve_application_location(data.get("district"), data.get("block"))
    team_type = (data.get("team_type") or "core").strip().lower()
    if team_type not in TEAM_TYPES:
        raise ValidationError("Invalid team type")

    membership = Membership(
        full_name=(data.get("full_name") or "").strip(),
        father_name=(data.get("father_name") or "").strip() or None,
        dob=_parse_dob(data.get("dob")),
        gender=data.get("gender") or None,
        mobile=(data.get("mobile") or "").strip(),
        email=(data.get("email") or "").strip().lower() or None,
        blood_group=data.get("blood_group") or None,
        education=data.get("education") or None,
        occupation=data.get("occupation") or None,
        id_number=data.get("id_number") or None,
        house_no=data.get("house_no") or None,
        street=data.get("street") or None,
        panchayat=data.get("panchayat") or None,
        village=data.get("village") or None,
        pincode=data.get("pincode") or None,
        photo_path=data.get("photo_path") or None,
        documents_path=data.get("documents_path") or None,
        reason=(data.get("reason") or "").strip(),
        team_type=team_type,
        agreed_to_terms=bool(data.get("agree_terms")),
        status="pending",
        **location,
    )
    if not membership.full_name or not membership.mobile or not membership.reason:
        raise ValidationError("Full name, mobile and reason are required")

    db.session.add(membership)
    db.session.flush()
    _append_history(membership, None, "submitted", "Submitted via public form")
    record_audit(
        None,
        "form_submitted",
        target_type="Membership",
        target_id=membership.id,
        target_name=membership.full_name,
        details={"district": membership.district, "block": membership.block, "level": membership.level},
    )
    db.session.commit()
    current_app.logger.info("Application submitted", extra={"membership": membership.id, "district": membership.district})
    return membership


# --- membership ids -------------------------------------------------------------------------------


def membership_id_prefix(district: str | None, year: int | None = None) -> str:
    code = (district or "").strip()[:3].upper()
    if not code:
        raise ValidationError("District is required to issue a membership id")
    config = current_app.config
    year = year or datetime.utcnow().year
    return f"{config.get('ORG_CODE', 'RMAS')}/{config.get('ORG_STATE_CODE', 'BIH')}/{code}/{year}"


def _highest_issued_serial(prefix: str) -> int:
    rows = db.session.execute(
        select(Membership.membership_id).where(Membership.membership_id.like(f"{prefix}/%"))
    ).scalars()
    highest = 0
    for value in rows:
        tail = value.rsplit("/", 1)[-1]
        if tail.isdigit():
            highest = max(highest, int(tail))
    return highest


def _increment_serial(prefix: str) -> int:
    return db.session.execute(
        update(MembershipSerial)
        .where(MembershipSerial.prefix == prefix)
        .values(last_serial=MembershipSerial.last_serial + 1)
        .execution_options(synchronize_session=False)
    ).rowcount


def next_serial(prefix: str) -> int:
    """Atomically reserve the next serial for a district/year prefix."""
    if _increment_serial(prefix) == 0:
        seed = _highest_issued_serial(prefix)
        try:
            with db.session.begin_nested():
                db.session.add(MembershipSerial(prefix=prefix, last_serial=seed))
        except IntegrityError:
            # Counter row created by a concurrent request; fall through to the increment.
            current_app.logger.info("Serial counter created concurrently", extra={"prefix": prefix})
        if _increment_serial(prefix) != 1:
            raise ConcurrencyConflictError("Could not reserve a membership serial, please retry")
    return db.session.execute(
        select(MembershipSerial.last_serial).where(MembershipSerial.prefix == prefix)
    ).scalar_one()


def generate_membership_id(district: str | None, year: int | None = None) -> str:
    prefix = membership_id_prefix(district, year)
    return f"{prefix}/{next_serial(prefix):03d}"


def _ensure_membership_id(membership: Membership) -> Optional[str]:
    """Issue an id only if the row has none. Returns the new id, or None when one already existed."""
    if membership.membership_id:
        return None
    new_id = generate_membership_id(membership.district or membership.assigned_district)
    if _conditional_update(membership, Membership.membership_id.is_(None), membership_id=new_id):
        return new_id
    return None


# --- administrator actions ------------------------------------------------------------------------


def claim(actor: User, membership_id: str, note: str | None = None) -> Membership:
    membership = _load(membership_id)
    _authorize(actor, membership, "claim")
    if membership.status != "pending":
        raise StateConflictError("Only pending forms can be claimed")
    if membership.assigned_to_id:
        raise ConcurrencyConflictError("Form already assigned")

    claimed = _conditional_update(
        membership,
        Membership.status == "pending",
        Membership.assigned_to_id.is_(None),
        assigned_to_id=actor.id,
    )
    if not claimed:
        db.session.rollback()
        raise ConcurrencyConflictError("Form already assigned")

    _append_history(membership, actor, "claimed", note or "Claimed by user")
    record_audit(actor, "form_claimed", "Membership", membership.id, {"status": "pending"}, note, membership.full_name)
    db.session.commit()

    if membership.email:
        _best_effort_mail(email_service.send_claim_email, membership, actor.name)
    return membership


def assign_to_user(actor: User, membership_id: str, user_id: str | None, note: str | None = None) -> Membership:
    membership = _load(membership_id)
    _authorize(actor, membership, "assign")
    if membership.status != "pending":
        raise StateConflictError("Only pending forms can be assigned")

    target = None
    if user_id:
        target = db.session.get(User, user_id)
        if target is None:
            raise NotFoundError("User not found")
        if not target.active:
            raise ValidationError("Cannot assign to an inactive user")
        if not can_perform_actions(target, membership):
            raise ValidationError("Selected user has no authority over this application")

    changed = _conditional_update(membership, Membership.status == "pending", assigned_to_id=target.id if target else None)
    if not changed:
        db.session.rollback()
        raise StateConflictError("Application is no longer pending")

    if target is not None:
        _append_history(membership, actor, "assigned", note or f"Assigned to {target.name} ({target.role})")
    else:
        _append_history(membership, actor, "unassigned", note or "Assignment cleared")
    record_audit(
        actor,
        "form_assigned",
        "Membership",
        membership.id,
        {"assigned_to": target.id if target else None},
        note,
        membership.full_name,
    )
    db.session.commit()
    return membership


def _issue_joining_letter(actor: User | None, membership: Membership) -> Optional[bytes]:
    """Render, store and record the joining letter. Failures are recorded, never raised."""
    qr_payload = email_service.verification_url(membership.membership_id)
    try:
        letter, primary_error = pdf_generator.build_joining_letter(membership, qr_payload)
        path = pdf_generator.store_pdf(letter, email_service.joining_letter_filename(membership.membership_id))
    except (ExternalServiceError, OSError) as exc:
        current_app.logger.error("Joining letter not generated", extra={"membership": membership.id, "error": str(exc)})
        _append_history(membership, actor, "joining_pdf_error", str(exc))
        record_audit(actor, "joining_letter_failed", "Membership", membership.id, {"error": str(exc)}, None, membership.full_name)
        db.session.commit()
        return None

    if primary_error is not None:
        _append_history(membership, actor, "joining_pdf_error", f"Fallback letter issued: {primary_error}")
        record_audit(
            actor,
            "joining_letter_fallback",
            "Membership",
            membership.id,
            {"membership_id": membership.membership_id, "error": primary_error},
            None,
            membership.full_name,
        )
    _conditional_update(membership, pdf_path=path)
    record_audit(
        actor,
        "joining_letter_generated",
        "Membership",
        membership.id,
        {"membership_id": membership.membership_id, "file_size": len(letter), "fallback": primary_error is not None},
        None,
        membership.full_name,
    )
    db.session.commit()
    return letter


def accept(
    actor: User,
    membership_id: str,
    note: str | None = None,
    job_role: str | None = None,
    team_type: str | None = None,
) -> Membership:
    membership = _load(membership_id)
    _authorize(actor, membership, "accept")
    if membership.status != "pending":
        raise StateConflictError("Only pending applications can be accepted")
    if team_type and team_type not in TEAM_TYPES:
        raise ValidationError("Invalid team type")
    # Fail before the transition if no id could ever be issued for this row.
    membership_id_prefix(membership.district or membership.assigned_district)

    legacy_role = bool(job_role and team_type and can_assign_role(actor, membership, team_type))
    values = {"status": "accepted"}
    if legacy_role:
        values.update(job_role=job_role, team_type=team_type)

    if not _conditional_update(membership, Membership.status == "pending", **values):
        db.session.rollback()
        raise StateConflictError("Application is no longer pending")
    try:
        _ensure_membership_id(membership)
    except ConcurrencyConflictError:
        db.session.rollback()
        raise

    summary = note or "Accepted"
    if legacy_role:
        db.session.add(
            RoleAssignment(
                membership_ref=membership.id,
                category="karyakarini",
                role_code=job_role,
                role_name=job_role,
                team_type=team_type,
                level="state",
                location=membership.state,
                assigned_by_id=actor.id,
                reason=note or "Assigned during acceptance",
                is_current=True,
            )
        )
        summary = f"{summary}; role {job_role} in {team_type} team"
    _append_history(membership, actor, "accepted", summary)
    record_audit(
        actor,
        "form_accepted",
        "Membership",
        membership.id,
        {"membership_id": membership.membership_id, "legacy_role": job_role if legacy_role else None},
        note,
        membership.full_name,
    )
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConcurrencyConflictError("Membership id collision, please retry") from exc
    current_app.logger.info("Application accepted", extra={"membership": membership.id, "membership_id": membership.membership_id})

    letter = _issue_joining_letter(actor, membership)
    if membership.email:
        _best_effort_mail(
            email_service.send_acceptance_email,
            membership,
            letter,
            on_failure=_history_callback(membership.id, actor, "acceptance_email_error", str),
        )
    return membership


def reject(actor: User, membership_id: str, note: str | None = None) -> Membership:
    membership = _load(membership_id)
    _authorize(actor, membership, "reject")
    if membership.status != "pending":
        raise StateConflictError("Only pending applications can be rejected")

    if not _conditional_update(membership, Membership.status == "pending", status="rejected"):
        db.session.rollback()
        raise StateConflictError("Application is no longer pending")
    _append_history(membership, actor, "rejected", note or "Rejected")
    record_audit(actor, "form_rejected", "Membership", membership.id, {}, note, membership.full_name)
    db.session.commit()

    if membership.email:
        _best_effort_mail(email_service.send_rejection_email, membership, note)
    return membership


def assign_role(
    actor: User,
    membership_id: str,
    category: str,
    role_code: str,
    team_type: str = "core",
    level: str | None = None,
    location: str | None = None,
    reason: str | None = None,
) -> RoleAssignment:
    membership = _load(membership_id)
    if not can_assign_role(actor, membership, team_type):
        _deny(actor, "manage_role", membership)
    if membership.status != "accepted":
        raise StateConflictError("Only accepted members can be assigned roles")

    post = get_catalogue().find_post(category, role_code)
    if post is None:
        raise ValidationError("Invalid role selected")
    if team_type not in TEAM_TYPES:
        raise ValidationError("Invalid team type")
    if level is None:
        located = effective_location(membership)
        level = located.level if located else None
    if level not in LEVELS:
        raise ValidationError("Invalid level")

    if location:
        try:
            canonical = get_hierarchy().canonical(level, location)
        except LocationLookupError as exc:
            raise ExternalServiceError("Location data is temporarily unavailable") from exc
        if canonical is None:
            raise ValidationError("Unknown location for the selected level")
        location = canonical
        if not can_assign_role_at_level(actor, level, location):
            _deny(actor, "manage_role", membership)

    db.session.execute(
        update(RoleAssignment)
        .where(RoleAssignment.membership_ref == membership.id, RoleAssignment.is_current.is_(True))
        .values(is_current=False)
        .execution_options(synchronize_session=False)
    )
    assignment = RoleAssignment(
        membership_ref=membership.id,
        category=category,
        role_code=post["code"],
        role_name=post.get("name"),
        team_type=team_type,
        level=level,
        location=location,
        assigned_by_id=actor.id,
        reason=reason,
        is_current=True,
    )
    db.session.add(assignment)
    _conditional_update(membership, job_role=post.get("name"), team_type=team_type)
    issued = _ensure_membership_id(membership)

    note = f"Assigned: {post.get('name')} ({level}{f' - {location}' if location else ''})"
    if reason:
        note = f"{note} - {reason}"
    if issued:
        note = f"{note}; membership id {issued}"
    _append_history(membership, actor, "role_assigned", note)
    record_audit(
        actor,
        "role_assigned",
        "Membership",
        membership.id,
        {"category": category, "role": post["code"], "team_type": team_type, "level": level, "location": location},
        reason,
        membership.full_name,
    )
    db.session.commit()
    db.session.expire(membership, ["role_assignments"])

    if not membership.email:
        _append_history(membership, actor, "no_email_for_download", "No email to notify member for downloads")
        db.session.commit()
        return assignment

    recipient = membership.email
    _best_effort_mail(
        email_service.send_role_assignment_email,
        membership,
        assignment,
        on_success=_history_callback(
            membership.id, actor, "download_notification_sent", lambda _: f"Notified {recipient} to download documents"
        ),
        on_failure=_history_callback(membership.id, actor, "download_notification_error", str),
    )
    return assignment


def resend_joining_letter(actor: User, membership_id: str) -> Membership:
    membership = _load(membership_id)
    _authorize(actor, membership, "resend_joining_letter")
    if not membership.membership_id:
        raise StateConflictError("Membership ID missing. Accept the form first.")
    if not membership.email:
        raise ValidationError("No email address for this member")

    letter = pdf_generator.load_pdf(membership.pdf_path)
    if letter is None:
        letter = _issue_joining_letter(actor, membership)
    if letter is None:
        raise ExternalServiceError("Joining letter could not be generated")

    recipient = membership.email
    record_audit(actor, "joining_letter_resent", "Membership", membership.id, {"to": recipient}, None, membership.full_name)
    db.session.commit()
    _best_effort_mail(
        email_service.send_resend_email,
        membership,
        letter,
        on_success=_history_callback(membership.id, actor, "resend_joining_letter", lambda _: f"Resent to {recipient}"),
        on_failure=_history_callback(membership.id, actor, "resend_joining_letter_error", str),
    )
    return membership


# --- reads ----------------------------------------------------------------------------------------


def list_forms(actor: User, status: str | None = None, page: int = 1, per_page: int = 25):
    query = apply_scope(Membership.query, actor)
    if status:
        query = query.filter(Membership.status == status)
    return query.order_by(Membership.created_at.desc()).paginate(page=page, per_page=per_page, error_out=False)


def visible_form(actor: User, membership_id: str) -> Membership:
    membership = _load(membership_id)
    visible = apply_scope(Membership.query.filter(Membership.id == membership.id), actor).first()
    if visible is None:
        _deny(actor, "view", membership)
    return membership


def eligible_assignees(membership: Membership) -> List[User]:
    candidates = (
        User.query.filter(User.active.is_(True), User.role != "superadmin")
        .order_by(User.assigned_level, User.name)
        .all()
    )
    return [user for user in candidates if can_perform_actions(user, membership)]
