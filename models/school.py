"""
School Models
Events, students and folders are owned by the admin-management side; the
access-token subsystem only reads them. The legacy token schema
(subject_tokens table and folders.share_token) also lives here.
"""
from core.config import utcnow
from sqlalchemy import Column, String, DateTime, Boolean, Integer, Text
import uuid

from core.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Event(Base):
    """A photo session (school day, class photos, graduation...)"""
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    school_name = Column(String(255), nullable=True)
    photographer_contact = Column(String(255), nullable=True)
    status = Column(String(32), default="active")  # draft, active, archived

    created_at = Column(DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "school_name": self.school_name,
            "photographer_contact": self.photographer_contact,
            "status": self.status,
        }


class Student(Base):
    """A student (subject) photographed at an event"""
    __tablename__ = "students"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), nullable=False, index=True)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=True)
    parent_email = Column(String(255), nullable=True, index=True)
    parent_phone = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=utcnow)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def to_dict(self):
        return {
            "id": self.id,
            "event_id": self.event_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "name": self.full_name,
        }


class Folder(Base):
    """Photo folder inside an event; may carry a legacy share token"""
    __tablename__ = "folders"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    is_published = Column(Boolean, default=False)

    # Legacy share link (superseded by access_tokens with kind=folder)
    share_token = Column(String(255), nullable=True, index=True)
    share_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "event_id": self.event_id,
            "name": self.name,
            "is_published": self.is_published,
        }


class LegacySubjectToken(Base):
    """Per-student tokens from before access_tokens existed (read-only)"""
    __tablename__ = "subject_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String(36), nullable=False, index=True)
    token = Column(Text, unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
