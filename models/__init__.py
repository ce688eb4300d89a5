"""Core data models for administrators, membership applications, role posts, download OTPs and audits."""
import uuid
from datetime import datetime

from flask_login import UserMixin
from sqlalchemy import event
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db
from utils.roles import LEVELS, ROLE_CODES, SUPERADMIN, TEAM_TYPES, parse_role


def generate_uuid() -> str:
	return str(uuid.uuid4())


MEMBERSHIP_STATUSES: tuple[str, ...] = (
	"pending",
	"accepted",
	"rejected",
)

HISTORY_ACTIONS: tuple[str, ...] = (
	"submitted",
	"claimed",
	"assigned",
	"unassigned",
	"accepted",
	"rejected",
	"role_assigned",
	"joining_pdf_error",
	"idcard_pdf_error",
	"acceptance_email_error",
	"resend_joining_letter",
	"resend_joining_letter_error",
	"download_notification_sent",
	"download_notification_error",
	"no_email_for_download",
)

AUDIT_ACTIONS: tuple[str, ...] = (
	"login",
	"logout",
	"forgot_password",
	"password_reset_via_otp",
	"password_changed",
	"user_created",
	"user_edited",
	"user_deleted",
	"user_deactivated",
	"user_reactivated",
	"role_assigned",
	"form_submitted",
	"form_claimed",
	"form_assigned",
	"form_accepted",
	"form_rejected",
	"authorization_denied",
	"joining_letter_generated",
	"joining_letter_failed",
	"joining_letter_fallback",
	"joining_letter_resent",
	"joining_letter_downloaded",
	"id_card_downloaded",
	"document_download_failed",
	"download_otp_requested",
	"download_otp_verified",
	"download_otp_rejected",
	"locations_reloaded",
)

AUDIT_TARGET_TYPES: tuple[str, ...] = (
	"User",
	"Membership",
	"Document",
	"Other",
)

DOCUMENT_TYPES: tuple[str, ...] = (
	"joining",
	"idcard",
)


def _in_clause(column: str, values: tuple[str, ...]) -> str:
	quoted = ",".join(f"'{value}'" for value in values)
	return f"{column} IN ({quoted})"


class User(UserMixin, db.Model):
	__tablename__ = "users"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	name = db.Column(db.String(150), nullable=False)
	email = db.Column(db.String(255), unique=True, nullable=False, index=True)
	password_hash = db.Column(db.String(255), nullable=False)
	role = db.Column(db.String(40), nullable=False, index=True)
	assigned_level = db.Column(db.String(20), nullable=True, index=True)
	assigned_id = db.Column(db.String(120), nullable=True, index=True)
	active = db.Column(db.Boolean, default=True, nullable=False)
	password_changed = db.Column(db.Boolean, default=False, nullable=False)
	otp_hash = db.Column(db.String(128), nullable=True)
	otp_expiry = db.Column(db.DateTime, nullable=True)
	otp_attempts = db.Column(db.Integer, default=0, nullable=False)
	otp_request_count = db.Column(db.Integer, default=0, nullable=False)
	otp_last_request_at = db.Column(db.DateTime, nullable=True)
	created_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	last_login_at = db.Column(db.DateTime, nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	__table_args__ = (
		db.CheckConstraint(_in_clause("role", ROLE_CODES), name="ck_users_role"),
		db.CheckConstraint(
			"assigned_level IS NULL OR " + _in_clause("assigned_level", LEVELS), name="ck_users_assigned_level"
		),
		db.CheckConstraint(
			"(role = 'superadmin' AND assigned_level IS NULL AND assigned_id IS NULL) OR "
			"(role <> 'superadmin' AND assigned_level IS NOT NULL AND assigned_id IS NOT NULL)",
			name="ck_users_assignment_consistent",
		),
	)

	def set_password(self, password: str) -> None:
		self.password_hash = generate_password_hash(password, method="pbkdf2:sha256", salt_length=16)

	def check_password(self, password: str) -> bool:
		if not self.password_hash:
			return False
		return check_password_hash(self.password_hash, password)

	@property
	def role_spec(self):
		return parse_role(self.role)

	@property
	def is_superadmin(self) -> bool:
		return self.role == SUPERADMIN

	@property
	def is_media_incharge(self) -> bool:
		return self.role_spec.is_media_incharge

	@property
	def is_active(self) -> bool:  # Flask-Login reads this
		return bool(self.active)

	def public_payload(self) -> dict:
		return {
			"id": self.id,
			"name": self.name,
			"email": self.email,
			"role": self.role,
			"assigned_level": self.assigned_level,
			"assigned_id": self.assigned_id,
			"active": self.active,
		}


class UserAssignmentError(ValueError):
	"""Role and assigned level/entity disagree."""


@event.listens_for(User, "before_insert")
@event.listens_for(User, "before_update")
def _user_assignment_matches_role(mapper, connection, target):
	role = parse_role(target.role)
	if role.is_superadmin:
		if target.assigned_level or target.assigned_id:
			raise UserAssignmentError("superadmin cannot carry a level assignment")
		return
	if target.assigned_level != role.level or not target.assigned_id:
		raise UserAssignmentError(f"{target.role} must be assigned to a {role.level}")


class Membership(db.Model):
	__tablename__ = "memberships"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	full_name = db.Column(db.String(150), nullable=False)
	father_name = db.Column(db.String(150), nullable=True)
	dob = db.Column(db.Date, nullable=True)
	gender = db.Column(db.String(20), nullable=True)
	mobile = db.Column(db.String(20), nullable=False)
	email = db.Column(db.String(255), nullable=True, index=True)
	blood_group = db.Column(db.String(8), nullable=True)
	education = db.Column(db.String(120), nullable=True)
	occupation = db.Column(db.String(120), nullable=True)
	id_number = db.Column(db.String(40), nullable=True)
	house_no = db.Column(db.String(60), nullable=True)
	street = db.Column(db.String(150), nullable=True)
	panchayat = db.Column(db.String(120), nullable=True)
	village = db.Column(db.String(120), nullable=True)
	pincode = db.Column(db.String(10), nullable=True)
	state = db.Column(db.String(80), nullable=True, index=True)
	division = db.Column(db.String(120), nullable=True, index=True)
	district = db.Column(db.String(120), nullable=True, index=True)
	block = db.Column(db.String(120), nullable=True, index=True)
	level = db.Column(db.String(20), nullable=True)
	photo_path = db.Column(db.String(500), nullable=True)
	documents_path = db.Column(db.String(500), nullable=True)
	reason = db.Column(db.Text, nullable=False)
	agreed_to_terms = db.Column(db.Boolean, default=False, nullable=False)
	status = db.Column(db.String(20), nullable=False, default="pending", index=True)
	membership_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
	pdf_path = db.Column(db.String(500), nullable=True)
	assigned_to_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
	assigned_district = db.Column(db.String(120), nullable=True, index=True)
	team_type = db.Column(db.String(20), nullable=False, default="core")
	job_role = db.Column(db.String(120), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	__table_args__ = (
		db.CheckConstraint(_in_clause("status", MEMBERSHIP_STATUSES), name="ck_memberships_status"),
		db.CheckConstraint("level IS NULL OR " + _in_clause("level", LEVELS), name="ck_memberships_level"),
		db.CheckConstraint(_in_clause("team_type", TEAM_TYPES), name="ck_memberships_team_type"),
	)

	assigned_to = db.relationship("User", foreign_keys=[assigned_to_id])
	history = db.relationship(
		"MembershipHistory",
		back_populates="membership",
		order_by="MembershipHistory.id",
		lazy="selectin",
	)
	role_assignments = db.relationship(
		"RoleAssignment",
		back_populates="membership",
		order_by="RoleAssignment.id",
		lazy="selectin",
	)

	@property
	def current_role(self):
		for assignment in reversed(self.role_assignments or []):
			if assignment.is_current:
				return assignment
		return None

	@property
	def designation(self) -> str:
		role = self.current_role
		if role:
			return " ".join(part for part in (role.level, role.role_name or role.role_code, role.location) if part)
		return self.job_role or "Member"

	def public_payload(self) -> dict:
		role = self.current_role
		return {
			"id": self.id,
			"full_name": self.full_name,
			"father_name": self.father_name,
			"email": self.email,
			"mobile": self.mobile,
			"state": self.state,
			"division": self.division,
			"district": self.district,
			"block": self.block,
			"level": self.level,
			"status": self.status,
			"membership_id": self.membership_id,
			"team_type": self.team_type,
			"assigned_to": self.assigned_to_id,
			"role": role.public_payload() if role else None,
			"created_at": self.created_at.isoformat() if self.created_at else None,
		}


class MembershipHistory(db.Model):
	__tablename__ = "membership_history"

	id = db.Column(db.Integer, primary_key=True)
	membership_ref = db.Column(db.String(36), db.ForeignKey("memberships.id"), nullable=False, index=True)
	# Plain column: history outlives deleted administrators.
	actor_id = db.Column(db.String(36), nullable=True, index=True)
	actor_role = db.Column(db.String(40), nullable=True)
	action = db.Column(db.String(40), nullable=False, index=True)
	note = db.Column(db.String(1000), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(_in_clause("action", HISTORY_ACTIONS), name="ck_membership_history_action"),
	)

	membership = db.relationship("Membership", back_populates="history")

	def public_payload(self) -> dict:
		return {
			"action": self.action,
			"note": self.note,
			"actor_id": self.actor_id,
			"actor_role": self.actor_role,
			"timestamp": self.created_at.isoformat() if self.created_at else None,
		}


class HistoryImmutableError(RuntimeError):
	"""Raised when code tries to rewrite or remove a history entry."""


@event.listens_for(MembershipHistory, "before_update")
def _history_is_append_only(mapper, connection, target):
	raise HistoryImmutableError("Membership history entries cannot be modified")


@event.listens_for(MembershipHistory, "before_delete")
def _history_is_never_deleted(mapper, connection, target):
	raise HistoryImmutableError("Membership history entries cannot be deleted")


class RoleAssignment(db.Model):
	__tablename__ = "role_assignments"

	id = db.Column(db.Integer, primary_key=True)
	membership_ref = db.Column(db.String(36), db.ForeignKey("memberships.id"), nullable=False, index=True)
	category = db.Column(db.String(60), nullable=False)
	role_code = db.Column(db.String(80), nullable=False)
	role_name = db.Column(db.String(150), nullable=True)
	team_type = db.Column(db.String(20), nullable=False, default="core")
	level = db.Column(db.String(20), nullable=False)
	location = db.Column(db.String(120), nullable=True)
	assigned_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	assigned_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	reason = db.Column(db.String(500), nullable=True)
	is_current = db.Column(db.Boolean, default=True, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(_in_clause("level", LEVELS), name="ck_role_assignments_level"),
		db.CheckConstraint(_in_clause("team_type", TEAM_TYPES), name="ck_role_assignments_team_type"),
	)

	membership = db.relationship("Membership", back_populates="role_assignments")
	assigned_by = db.relationship("User")

	def public_payload(self) -> dict:
		return {
			"category": self.category,
			"role": self.role_code,
			"role_name": self.role_name,
			"team_type": self.team_type,
			"level": self.level,
			"location": self.location,
			"assigned_by": self.assigned_by_id,
			"assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
			"reason": self.reason,
		}


class MembershipSerial(db.Model):
	"""Per-district, per-year counter backing membership id serials."""

	__tablename__ = "membership_serials"

	prefix = db.Column(db.String(64), primary_key=True)
	last_serial = db.Column(db.Integer, nullable=False, default=0)


class DownloadOtp(db.Model):
	__tablename__ = "download_otps"

	id = db.Column(db.Integer, primary_key=True)
	email = db.Column(db.String(255), nullable=False, index=True)
	membership_ref = db.Column(db.String(36), db.ForeignKey("memberships.id"), nullable=True, index=True)
	otp_hash = db.Column(db.String(128), nullable=False)
	expires_at = db.Column(db.DateTime, nullable=False, index=True)
	verified = db.Column(db.Boolean, default=False, nullable=False, index=True)
	verify_attempts = db.Column(db.Integer, default=0, nullable=False)
	verified_at = db.Column(db.DateTime, nullable=True)
	token_hash = db.Column(db.String(128), nullable=True, unique=True, index=True)
	token_expires = db.Column(db.DateTime, nullable=True, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	ip_address = db.Column(db.String(64), nullable=True)

	membership = db.relationship("Membership")

	def otp_is_live(self, now: datetime | None = None) -> bool:
		now = now or datetime.utcnow()
		return not self.verified and self.expires_at > now

	def token_is_live(self, now: datetime | None = None) -> bool:
		now = now or datetime.utcnow()
		return bool(self.verified and self.token_hash and self.token_expires and self.token_expires > now)


class AuditLog(db.Model):
	__tablename__ = "audit_logs"

	id = db.Column(db.Integer, primary_key=True)
	action = db.Column(db.String(50), nullable=False, index=True)
	performed_by = db.Column(db.String(36), nullable=True, index=True)
	performed_by_email = db.Column(db.String(255), nullable=True)
	performed_by_name = db.Column(db.String(150), nullable=True)
	performed_by_role = db.Column(db.String(40), nullable=True)
	level = db.Column(db.String(20), nullable=True, index=True)
	level_id = db.Column(db.String(120), nullable=True)
	target_type = db.Column(db.String(20), nullable=True)
	target_id = db.Column(db.String(64), nullable=True, index=True)
	target_name = db.Column(db.String(255), nullable=True)
	details = db.Column(db.JSON, nullable=True)
	note = db.Column(db.String(1000), nullable=True)
	ip_address = db.Column(db.String(64), nullable=True)
	user_agent = db.Column(db.String(255), nullable=True)
	timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.Index("ix_audit_action_time", "action", "timestamp"),
		db.Index("ix_audit_level_lookup", "level", "level_id", "timestamp"),
	)

