"""
Access Token Models
Bearer tokens that give families access to a gallery without an account,
plus the distribution log and admin-defined message templates.
"""
from core.config import utcnow
from sqlalchemy import Column, String, Text, DateTime, Boolean, Integer, JSON
import uuid

from core.database import Base


TOKEN_KINDS = ("student", "family", "group", "event", "folder", "share")
DISTRIBUTION_METHODS = ("email", "whatsapp", "sms", "print", "direct")
DISTRIBUTION_STATUSES = ("pending", "sent", "delivered", "opened", "failed", "bounced")


def _uuid() -> str:
    return str(uuid.uuid4())


class AccessToken(Base):
    """One opaque token bound to a set of subjects"""
    __tablename__ = "access_tokens"

    id = Column(String(36), primary_key=True, default=_uuid)
    token = Column(String(128), unique=True, nullable=False, index=True)
    kind = Column(String(16), nullable=False, index=True)  # see TOKEN_KINDS

    # Weak references: student ids, folder ids... depending on kind
    subject_ids = Column(JSON, default=list)
    event_id = Column(String(36), nullable=True, index=True)
    owner_contact = Column(String(255), nullable=True, index=True)  # family email / phone

    # Lifecycle
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    expires_at = Column(DateTime, nullable=True, index=True)  # null = legacy non-expiring
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    deactivated_at = Column(DateTime, nullable=True)
    deactivation_reason = Column(String(64), nullable=True)

    # Rotation chain
    rotated_from_id = Column(String(36), nullable=True, index=True)
    replaced_by_id = Column(String(36), nullable=True)

    # Usage (best-effort)
    usage_count = Column(Integer, default=0, nullable=False)
    last_used_at = Column(DateTime, nullable=True)

    # Distribution metadata and access rules
    token_metadata = Column(JSON, default=dict)
    access_rules = Column(JSON, default=dict)

    # Not persisted: which schema answered a lookup
    source = "access_tokens"

    def to_dict(self, mask: bool = True):
        from utils.tokens import mask_token
        return {
            "id": self.id,
            "token": mask_token(self.token) if mask else self.token,
            "kind": self.kind,
            "subject_ids": list(self.subject_ids or []),
            "event_id": self.event_id,
            "owner_contact": self.owner_contact,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": bool(self.is_active),
            "deactivated_at": self.deactivated_at.isoformat() if self.deactivated_at else None,
            "deactivation_reason": self.deactivation_reason,
            "rotated_from_id": self.rotated_from_id,
            "replaced_by_id": self.replaced_by_id,
            "usage_count": self.usage_count or 0,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "metadata": dict(self.token_metadata or {}),
            "access_rules": dict(self.access_rules or {}),
        }


class DistributionRecord(Base):
    """One delivery attempt of a token link to one recipient"""
    __tablename__ = "token_distribution_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(String(36), nullable=False, index=True)
    method = Column(String(16), nullable=False)  # see DISTRIBUTION_METHODS
    recipient = Column(String(255), nullable=False)
    status = Column(String(16), default="pending")  # see DISTRIBUTION_STATUSES
    message = Column(Text, nullable=True)
    request_id = Column(String(64), nullable=True, index=True)
    distributed_by = Column(String(128), nullable=True)
    details = Column(JSON, default=dict)

    sent_at = Column(DateTime, default=utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "token_id": self.token_id,
            "method": self.method,
            "recipient": self.recipient,
            "status": self.status,
            "message": self.message,
            "request_id": self.request_id,
            "distributed_by": self.distributed_by,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }


class DistributionTemplate(Base):
    """Admin-defined message template ({{var}}, {{#if}}, {{#each}} blocks)"""
    __tablename__ = "distribution_templates"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    method = Column(String(16), nullable=False)
    subject = Column(Text, nullable=True)
    content = Column(Text, nullable=False)
    language = Column(String(8), default="en")
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "method": self.method,
            "subject": self.subject,
            "content": self.content,
            "language": self.language,
            "is_active": bool(self.is_active),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
