"""Core data models for manifestations, attachments, response history, and staff access."""
import secrets
import unicodedata
from datetime import datetime

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db


MANIFESTATION_TYPES: tuple[str, ...] = (
	"Denúncia",
	"Reclamação",
	"Sugestão",
	"Elogio",
	"Informação",
)

DEFAULT_MANIFESTATION_TYPE = "Informação"

MANIFESTATION_STATUSES: tuple[str, ...] = (
	"received",
	"in_analysis",
	"resolved",
	"archived",
)

INITIAL_STATUS = "received"

STAFF_ROLES: tuple[str, ...] = (
	"admin",
	"analyst",
)


def _in_clause(column: str, values: tuple[str, ...]) -> str:
	return f"{column} IN ({','.join(repr(v) for v in values)})"


def generate_protocol(prefix: str = "DF", year: int | None = None) -> str:
	"""Return a public tracking code such as ``DF-2026-004217``.

	The six-digit suffix is random and is not checked against existing rows;
	the unique constraint on ``protocol`` is the only guard.
	"""
	year = year or datetime.utcnow().year
	return f"{prefix}-{year}-{secrets.randbelow(1_000_000):06d}"


def _fold(value: str) -> str:
	decomposed = unicodedata.normalize("NFKD", value.strip().lower())
	return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def canonical_type(value: str | None) -> str | None:
	"""Map a category name onto the fixed enumeration, ignoring case and accents."""
	if not value:
		return None
	folded = _fold(str(value))
	for known in MANIFESTATION_TYPES:
		if _fold(known) == folded:
			return known
	return None


class Manifestation(db.Model):
	__tablename__ = "manifestations"

	id = db.Column(db.Integer, primary_key=True)
	protocol = db.Column(db.String(20), unique=True, nullable=False, index=True)
	text = db.Column(db.Text, nullable=False)
	original_text = db.Column(db.Text, nullable=True)
	type = db.Column(db.String(50), nullable=False, default=DEFAULT_MANIFESTATION_TYPE, index=True)
	is_anonymous = db.Column(db.Boolean, nullable=False, default=True)
	name = db.Column(db.String(255), nullable=True)
	cpf = db.Column(db.String(20), nullable=True)
	is_public = db.Column(db.Boolean, nullable=False, default=False, index=True)
	was_edited = db.Column(db.Boolean, nullable=False, default=False)
	status = db.Column(db.String(20), nullable=False, default=INITIAL_STATUS, index=True)
	has_audio = db.Column(db.Boolean, nullable=False, default=False)
	has_video = db.Column(db.Boolean, nullable=False, default=False)
	image_count = db.Column(db.Integer, nullable=False, default=0)
	latitude = db.Column(db.Numeric(10, 8), nullable=True)
	longitude = db.Column(db.Numeric(11, 8), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(
			_in_clause("status", MANIFESTATION_STATUSES),
			name="ck_manifestation_status_valid",
		),
		db.CheckConstraint(
			"(original_text IS NULL AND NOT was_edited) OR (original_text IS NOT NULL AND was_edited)",
			name="ck_manifestation_original_text_edited",
		),
		db.CheckConstraint(
			"NOT is_anonymous OR (name IS NULL AND cpf IS NULL)",
			name="ck_manifestation_anonymous_identity",
		),
	)

	attachments = db.relationship(
		"Attachment",
		back_populates="manifestation",
		order_by="Attachment.id",
		cascade="all, delete-orphan",
	)
	responses = db.relationship(
		"ManifestationResponse",
		back_populates="manifestation",
		order_by="ManifestationResponse.id",
		cascade="all, delete-orphan",
	)

	@staticmethod
	def public_query():
		"""Restrict manifestations to the ones cleared for the public feed."""
		return Manifestation.query.filter(Manifestation.is_public.is_(True))

	def public_feed_payload(self) -> dict:
		return {
			"id": self.id,
			"text": self.text,
			"type": self.type,
			"created_at": self.created_at.isoformat(),
			"was_edited": self.was_edited,
		}

	def protocol_payload(self) -> dict:
		"""Fields visible to whoever holds the protocol; identity fields and the pre-edit text stay private."""
		return {
			"protocol": self.protocol,
			"text": self.text,
			"type": self.type,
			"status": self.status,
			"is_anonymous": self.is_anonymous,
			"was_edited": self.was_edited,
			"has_audio": self.has_audio,
			"has_video": self.has_video,
			"image_count": self.image_count,
			"created_at": self.created_at.isoformat(),
			"attachments": [a.payload() for a in self.attachments],
			"responses": [r.payload() for r in self.responses],
		}

	def staff_payload(self) -> dict:
		payload = self.protocol_payload()
		payload.update(
			{
				"id": self.id,
				"name": self.name,
				"cpf": self.cpf,
				"original_text": self.original_text,
				"is_public": self.is_public,
				"latitude": float(self.latitude) if self.latitude is not None else None,
				"longitude": float(self.longitude) if self.longitude is not None else None,
			}
		)
		return payload


class Attachment(db.Model):
	__tablename__ = "attachments"

	id = db.Column(db.Integer, primary_key=True)
	manifestation_id = db.Column(
		db.Integer,
		db.ForeignKey("manifestations.id", ondelete="CASCADE"),
		nullable=False,
		index=True,
	)
	file_path = db.Column(db.String(500), nullable=False, unique=True)
	file_type = db.Column(db.String(100), nullable=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

	manifestation = db.relationship("Manifestation", back_populates="attachments")

	def payload(self) -> dict:
		return {"file_path": self.file_path, "file_type": self.file_type}


class ManifestationResponse(db.Model):
	"""Append-only history entry; there is intentionally no update path."""

	__tablename__ = "manifestation_responses"

	id = db.Column(db.Integer, primary_key=True)
	manifestation_id = db.Column(
		db.Integer,
		db.ForeignKey("manifestations.id", ondelete="CASCADE"),
		nullable=False,
		index=True,
	)
	message = db.Column(db.Text, nullable=False)
	is_admin = db.Column(db.Boolean, nullable=False, default=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	manifestation = db.relationship("Manifestation", back_populates="responses")

	def payload(self) -> dict:
		return {
			"message": self.message,
			"is_admin": self.is_admin,
			"created_at": self.created_at.isoformat(),
		}


class StaffUser(UserMixin, db.Model):
	__tablename__ = "staff_users"

	id = db.Column(db.Integer, primary_key=True)
	username = db.Column(db.String(50), unique=True, nullable=False, index=True)
	password_hash = db.Column(db.String(255), nullable=False)
	role = db.Column(db.String(20), nullable=False, default="admin")
	is_active = db.Column(db.Boolean, default=True, nullable=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	last_login_at = db.Column(db.DateTime, nullable=True)

	__table_args__ = (
		db.CheckConstraint(_in_clause("role", STAFF_ROLES), name="ck_staff_role_valid"),
	)

	audit_logs = db.relationship("AuditLog", back_populates="user", lazy="dynamic")

	def set_password(self, password: str) -> None:
		self.password_hash = generate_password_hash(password, method="pbkdf2:sha256", salt_length=16)

	def check_password(self, password: str) -> bool:
		return check_password_hash(self.password_hash, password)

	@property
	def active(self) -> bool:  # Flask-Login compatibility alias
		return self.is_active


class AuditLog(db.Model):
	__tablename__ = "audit_logs"

	id = db.Column(db.Integer, primary_key=True)
	user_id = db.Column(db.Integer, db.ForeignKey("staff_users.id"), nullable=True)
	action_type = db.Column(db.String(50), nullable=False)
	ip_address = db.Column(db.String(64), nullable=True)
	user_agent = db.Column(db.String(255), nullable=True)
	context_entity = db.Column(db.String(120), nullable=True)
	timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	user = db.relationship("StaffUser", back_populates="audit_logs")
