"""
Persistence for access tokens.

SqlTokenStore owns the access_tokens table. LegacyTokenAdapter answers lookups
against the pre-consolidation schema (subject_tokens, folders.share_token) and
hands back the same AccessToken shape, so validators never care which schema
matched. Every public method is one short session.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import logger, utcnow
from models.access_token import AccessToken, DistributionRecord, DistributionTemplate
from models.school import Event, Folder, LegacySubjectToken, Student
from utils.token_errors import StoreUnavailable, TokenNotFound
from utils.tokens import mask_token


class TokenCollision(Exception):
    """Insert hit the unique index on access_tokens.token."""


class _SessionMixin:
    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        if session_factory is None:
            from core.database import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self._session_factory()
        try:
            yield db
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as ex:
            db.rollback()
            logger.warning(f"[tokens] store error: {ex.__class__.__name__}")
            raise StoreUnavailable(str(ex)) from ex
        finally:
            db.close()


class SqlTokenStore(_SessionMixin):

    # ---- token lookups ----

    def token_exists(self, value: str) -> bool:
        with self._session() as db:
            if db.query(AccessToken.id).filter(AccessToken.token == value).first():
                return True
            if db.query(LegacySubjectToken.id).filter(LegacySubjectToken.token == value).first():
                return True
            return db.query(Folder.id).filter(Folder.share_token == value).first() is not None

    def get_by_value(self, value: str) -> Optional[AccessToken]:
        with self._session() as db:
            return db.query(AccessToken).filter(AccessToken.token == value).first()

    def get_by_id(self, token_id: str) -> Optional[AccessToken]:
        with self._session() as db:
            return db.get(AccessToken, token_id)

    def get_many(self, token_ids: Iterable[str]) -> List[AccessToken]:
        ids = list(token_ids)
        if not ids:
            return []
        with self._session() as db:
            rows = db.query(AccessToken).filter(AccessToken.id.in_(ids)).all()
        by_id = {r.id: r for r in rows}
        return [by_id[i] for i in ids if i in by_id]

    def find_active_student_token(self, student_id: str, event_id: Optional[str], now: datetime) -> Optional[AccessToken]:
        # subject_ids is JSON; narrow by event in SQL, match the id in Python to stay portable across dialects
        with self._session() as db:
            rows = self._active(db, now).filter(
                AccessToken.kind == "student",
                AccessToken.event_id == event_id,
            ).all()
        for row in rows:
            if list(row.subject_ids or []) == [student_id]:
                return row
        return None

    def find_active_family_token(self, owner_contact: str, event_id: str, now: datetime) -> Optional[AccessToken]:
        with self._session() as db:
            return self._active(db, now).filter(
                AccessToken.kind == "family",
                AccessToken.owner_contact == owner_contact,
                AccessToken.event_id == event_id,
            ).first()

    def find_active_event_token(self, event_id: str, now: datetime) -> Optional[AccessToken]:
        with self._session() as db:
            return self._active(db, now).filter(
                AccessToken.kind == "event",
                AccessToken.event_id == event_id,
            ).first()

    def list_expiring(self, cutoff: datetime, now: datetime) -> List[AccessToken]:
        """Active tokens still valid now whose expiry falls on or before cutoff."""
        with self._session() as db:
            return db.query(AccessToken).filter(
                AccessToken.is_active == True,  # noqa: E712
                AccessToken.replaced_by_id == None,  # noqa: E711
                AccessToken.expires_at != None,  # noqa: E711
                AccessToken.expires_at > now,
                AccessToken.expires_at <= cutoff,
            ).order_by(AccessToken.expires_at.asc()).all()

    def list_tokens(self, event_id: Optional[str] = None, kind: Optional[str] = None,
                    include_inactive: bool = False, limit: int = 200, offset: int = 0) -> List[AccessToken]:
        with self._session() as db:
            q = db.query(AccessToken)
            if event_id:
                q = q.filter(AccessToken.event_id == event_id)
            if kind:
                q = q.filter(AccessToken.kind == kind)
            if not include_inactive:
                q = q.filter(AccessToken.is_active == True)  # noqa: E712
            return q.order_by(AccessToken.created_at.desc()).offset(offset).limit(limit).all()

    def count_by_state(self, now: datetime, soon: datetime) -> Dict[str, int]:
        with self._session() as db:
            total = db.query(func.count(AccessToken.id)).scalar() or 0
            deactivated = db.query(func.count(AccessToken.id)).filter(AccessToken.is_active == False).scalar() or 0  # noqa: E712
            expired = db.query(func.count(AccessToken.id)).filter(
                AccessToken.is_active == True,  # noqa: E712
                AccessToken.expires_at != None,  # noqa: E711
                AccessToken.expires_at <= now,
            ).scalar() or 0
            expiring_soon = db.query(func.count(AccessToken.id)).filter(
                AccessToken.is_active == True,  # noqa: E712
                AccessToken.expires_at > now,
                AccessToken.expires_at <= soon,
            ).scalar() or 0
        return {
            "total": total,
            "active": total - deactivated - expired,
            "expired": expired,
            "deactivated": deactivated,
            "expiring_soon": expiring_soon,
        }

    @staticmethod
    def _active(db: Session, now: datetime):
        return db.query(AccessToken).filter(
            AccessToken.is_active == True,  # noqa: E712
            or_(AccessToken.expires_at == None, AccessToken.expires_at > now),  # noqa: E711
        )

    # ---- token writes ----

    def create_token(self, record: AccessToken) -> AccessToken:
        try:
            with self._session() as db:
                db.add(record)
                db.commit()
                db.refresh(record)
                return record
        except IntegrityError as ex:
            raise TokenCollision(mask_token(record.token)) from ex

    def rotate_token(self, old_id: str, replacement: AccessToken, now: datetime, reason: str = "rotated") -> AccessToken:
        """Deactivate old_id and insert replacement in one transaction."""
        try:
            with self._session() as db:
                old = db.get(AccessToken, old_id, with_for_update=True)
                if old is None:
                    raise TokenNotFound(old_id)
                if old.replaced_by_id:
                    # Already rotated by a concurrent or repeated call
                    existing = db.get(AccessToken, old.replaced_by_id)
                    if existing is not None:
                        return existing
                replacement.rotated_from_id = old.id
                db.add(replacement)
                db.flush()
                old.is_active = False
                old.deactivated_at = now
                old.deactivation_reason = reason
                old.replaced_by_id = replacement.id
                old.updated_at = now
                db.commit()
                db.refresh(replacement)
                return replacement
        except IntegrityError as ex:
            raise TokenCollision(mask_token(replacement.token)) from ex

    def deactivate_token(self, token_id: str, now: datetime, reason: str) -> AccessToken:
        with self._session() as db:
            row = db.get(AccessToken, token_id)
            if row is None:
                raise TokenNotFound(token_id)
            if row.is_active:
                row.is_active = False
                row.deactivated_at = now
                row.deactivation_reason = reason
                row.updated_at = now
                db.commit()
                db.refresh(row)
            return row

    def set_expiry(self, token_id: str, expires_at: Optional[datetime]) -> None:
        with self._session() as db:
            db.execute(update(AccessToken).where(AccessToken.id == token_id).values(expires_at=expires_at))
            db.commit()

    def record_usage(self, token_id: str, used_at: datetime) -> None:
        with self._session() as db:
            db.execute(
                update(AccessToken)
                .where(AccessToken.id == token_id)
                .values(usage_count=AccessToken.usage_count + 1, last_used_at=used_at)
            )
            db.commit()

    # ---- subjects ----

    def get_event(self, event_id: Optional[str]) -> Optional[Event]:
        if not event_id:
            return None
        with self._session() as db:
            return db.get(Event, event_id)

    def get_students(self, student_ids: Iterable[str]) -> List[Student]:
        ids = list(student_ids or [])
        if not ids:
            return []
        with self._session() as db:
            return db.query(Student).filter(Student.id.in_(ids)).all()

    def list_event_students(self, event_id: str) -> List[Student]:
        with self._session() as db:
            return db.query(Student).filter(Student.event_id == event_id).order_by(Student.last_name, Student.first_name).all()

    def get_folders(self, folder_ids: Iterable[str]) -> List[Folder]:
        ids = list(folder_ids or [])
        if not ids:
            return []
        with self._session() as db:
            return db.query(Folder).filter(Folder.id.in_(ids)).all()

    # ---- distribution log / templates ----

    def add_distribution_record(self, record: DistributionRecord) -> DistributionRecord:
        with self._session() as db:
            db.add(record)
            db.commit()
            db.refresh(record)
            return record

    def distribution_history(self, token_id: str, limit: int = 100) -> List[DistributionRecord]:
        with self._session() as db:
            return db.query(DistributionRecord).filter(
                DistributionRecord.token_id == token_id
            ).order_by(DistributionRecord.sent_at.desc(), DistributionRecord.id.desc()).limit(limit).all()

    def get_template(self, template_id: str) -> Optional[DistributionTemplate]:
        with self._session() as db:
            return db.get(DistributionTemplate, template_id)

    def list_templates(self) -> List[DistributionTemplate]:
        with self._session() as db:
            return db.query(DistributionTemplate).order_by(DistributionTemplate.name).all()

    def save_template(self, template: DistributionTemplate) -> DistributionTemplate:
        with self._session() as db:
            merged = db.merge(template)
            db.commit()
            db.refresh(merged)
            return merged


class LegacyTokenAdapter(_SessionMixin):
    """Read-only lookups against the old per-subject and folder token columns."""

    SOURCES = ("subject_tokens", "folders")

    def find(self, value: str) -> Optional[AccessToken]:
        with self._session() as db:
            subject_tok = db.query(LegacySubjectToken).filter(LegacySubjectToken.token == value).first()
            if subject_tok is not None:
                student = db.get(Student, subject_tok.subject_id)
                return self._view(
                    token=subject_tok.token,
                    kind="student",
                    subject_ids=[subject_tok.subject_id],
                    event_id=student.event_id if student else None,
                    expires_at=subject_tok.expires_at,
                    is_active=True,
                    created_at=subject_tok.created_at,
                    source="subject_tokens",
                )
            folder = db.query(Folder).filter(Folder.share_token == value).first()
            if folder is not None:
                return self._view(
                    token=folder.share_token,
                    kind="folder",
                    subject_ids=[folder.id],
                    event_id=folder.event_id,
                    expires_at=folder.share_expires_at,
                    is_active=bool(folder.is_published),
                    created_at=folder.created_at,
                    source="folders",
                )
        return None

    def iter_all(self) -> List[AccessToken]:
        """Every legacy token as an AccessToken view (for migration)."""
        out: List[AccessToken] = []
        with self._session() as db:
            students = {s.id: s for s in db.query(Student).all()}
            for row in db.query(LegacySubjectToken).all():
                student = students.get(row.subject_id)
                out.append(self._view(
                    token=row.token, kind="student", subject_ids=[row.subject_id],
                    event_id=student.event_id if student else None, expires_at=row.expires_at,
                    is_active=True, created_at=row.created_at, source="subject_tokens",
                ))
            for folder in db.query(Folder).filter(Folder.share_token != None).all():  # noqa: E711
                out.append(self._view(
                    token=folder.share_token, kind="folder", subject_ids=[folder.id],
                    event_id=folder.event_id, expires_at=folder.share_expires_at,
                    is_active=bool(folder.is_published), created_at=folder.created_at, source="folders",
                ))
        return out

    @staticmethod
    def _view(source: str, **fields) -> AccessToken:
        view = AccessToken(
            id=f"legacy:{source}:{mask_token(fields['token'])}",
            usage_count=0,
            token_metadata={"legacy_source": source},
            access_rules={},
            **fields,
        )
        view.source = source
        return view


def migrate_legacy_tokens(store: SqlTokenStore, legacy: LegacyTokenAdapter) -> Dict[str, int]:
    """Copy legacy tokens into access_tokens; tokens already present are skipped."""
    migrated = skipped = 0
    for view in legacy.iter_all():
        if store.get_by_value(view.token) is not None:
            skipped += 1
            continue
        record = AccessToken(
            token=view.token,
            kind=view.kind,
            subject_ids=list(view.subject_ids or []),
            event_id=view.event_id,
            expires_at=view.expires_at,
            is_active=view.is_active,
            created_at=view.created_at or utcnow(),
            usage_count=0,
            token_metadata={"legacy_source": view.source, "migrated": True},
            access_rules={},
        )
        try:
            store.create_token(record)
            migrated += 1
        except TokenCollision:
            skipped += 1
    logger.info(f"[tokens] legacy migration: migrated={migrated} skipped={skipped}")
    return {"migrated": migrated, "skipped": skipped}
