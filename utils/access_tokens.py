"""
Access token service: issuing, validating, rotating and revoking family
gallery tokens.

All storage goes through an injected store (SqlTokenStore in production, any
object with the same methods in tests). Legacy-schema tokens are resolved by
an optional LegacyTokenAdapter behind the same validate_token() call.

Callers outside the admin surface only ever see ValidationResult.to_dict():
unknown, expired and deactivated tokens produce the exact same body.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.config import (
    logger,
    utcnow,
    TOKEN_DEFAULT_EXPIRY_DAYS,
    TOKEN_MAX_DEVICES_FAMILY,
    TOKEN_MAX_DEVICES_STUDENT,
    TOKEN_MAX_GENERATION_ATTEMPTS,
    TOKEN_MIN_LENGTH,
    TOKEN_ROTATION_THRESHOLD_DAYS,
)
from models.access_token import AccessToken, TOKEN_KINDS
from models.school import Student
from utils.token_errors import (
    ExhaustedRetries,
    InvalidTokenRequest,
    SubjectNotFound,
    TokenDeactivated,
    TokenNotFound,
)
from utils.token_store import TokenCollision
from utils.tokens import TokenPolicy, days_until, generate, is_well_formed, mask_token, portal_url
from utils.usage_tracker import InlineUsageRecorder, UsageRecorder


ACCESS_LEVELS = {
    "student": "student",
    "family": "family",
    "group": "group",
    "event": "event",
    "folder": "group",
    "share": "event",
}


class TokenState(str, Enum):
    UNKNOWN = "unknown"
    ACTIVE = "active"
    EXPIRED = "expired"
    DEACTIVATED = "deactivated"


@dataclass
class TokenOptions:
    expiry_days: Optional[int] = None
    distribution_method: str = "direct"
    generated_by: Optional[str] = None
    notes: Optional[str] = None
    rotate_existing: bool = False
    max_devices: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenInspection:
    state: TokenState
    token: Optional[AccessToken] = None
    source: Optional[str] = None
    expires_in_days: Optional[int] = None

    def to_dict(self):
        return {
            "state": self.state.value,
            "source": self.source,
            "expires_in_days": self.expires_in_days,
            "token": self.token.to_dict(mask=True) if self.token is not None else None,
        }


@dataclass
class ValidationResult:
    is_valid: bool
    access_level: str = "none"
    subject: Optional[dict] = None
    subjects: List[dict] = field(default_factory=list)
    event: Optional[dict] = None
    warnings: List[str] = field(default_factory=list)
    expires_in_days: Optional[int] = None
    # Internal only, never serialized
    token: Optional[AccessToken] = None

    @classmethod
    def invalid(cls) -> "ValidationResult":
        return cls(is_valid=False)

    def to_dict(self) -> dict:
        if not self.is_valid:
            return {"isValid": False, "accessLevel": "none"}
        out = {
            "isValid": True,
            "accessLevel": self.access_level,
            "subject": self.subject,
            "subjects": self.subjects,
            "event": self.event,
            "warnings": self.warnings,
            "expiresInDays": self.expires_in_days,
        }
        return out


@dataclass
class BulkResult:
    successful: Dict[str, AccessToken] = field(default_factory=dict)
    failed: List[Dict[str, str]] = field(default_factory=list)
    total_requested: int = 0
    tokens_generated: int = 0
    tokens_rotated: int = 0
    tokens_reused: int = 0

    @property
    def summary(self) -> dict:
        return {
            "total_requested": self.total_requested,
            "successful": len(self.successful),
            "failed": len(self.failed),
            "tokens_generated": self.tokens_generated,
            "tokens_rotated": self.tokens_rotated,
            "tokens_reused": self.tokens_reused,
        }

    def to_dict(self, base_url: Optional[str] = None) -> dict:
        return {
            "successful": {
                ident: {**tok.to_dict(mask=False), "portal_url": portal_url(tok.token, base_url)}
                for ident, tok in self.successful.items()
            },
            "failed": list(self.failed),
            "summary": self.summary,
        }


class AccessTokenService:
    def __init__(
        self,
        store,
        legacy=None,
        clock: Callable[[], datetime] = utcnow,
        usage: Optional[UsageRecorder] = None,
        randbelow: Optional[Callable[[int], int]] = None,
        policy: Optional[TokenPolicy] = None,
        max_attempts: int = TOKEN_MAX_GENERATION_ATTEMPTS,
        default_expiry_days: int = TOKEN_DEFAULT_EXPIRY_DAYS,
        warning_days: int = TOKEN_ROTATION_THRESHOLD_DAYS,
    ):
        self.store = store
        self.legacy = legacy
        self.clock = clock
        self.usage = usage or InlineUsageRecorder(store.record_usage)
        self.policy = policy or TokenPolicy()
        self.max_attempts = max_attempts
        self.default_expiry_days = default_expiry_days
        self.warning_days = warning_days
        self._randbelow = randbelow

    # ============ Generation ============

    def generate_unique_token(self) -> str:
        """Draw until a value unused in every schema turns up; nothing is written here."""
        for attempt in range(1, self.max_attempts + 1):
            candidate = generate(self.policy, randbelow=self._randbelow)
            if not self.store.token_exists(candidate):
                return candidate
            logger.warning(f"[tokens] collision on attempt {attempt}: {mask_token(candidate)}")
        logger.error(f"[tokens] exhausted {self.max_attempts} generation attempts")
        raise ExhaustedRetries(self.max_attempts)

    def _build(self, kind: str, subject_ids: List[str], event_id: Optional[str],
               owner_contact: Optional[str], options: TokenOptions,
               inherit: Optional[AccessToken] = None) -> AccessToken:
        now = self.clock()
        days = options.expiry_days if options.expiry_days is not None else self.default_expiry_days
        metadata = dict(inherit.token_metadata or {}) if inherit is not None else {}
        metadata.update({
            "generated_at": now.isoformat(),
            "distribution_method": options.distribution_method,
        })
        if options.generated_by:
            metadata["generated_by"] = options.generated_by
        if options.notes:
            metadata["notes"] = options.notes
        metadata.update(options.metadata or {})
        rules = dict(inherit.access_rules or {}) if inherit is not None else {}
        if options.max_devices is not None:
            rules["max_devices"] = options.max_devices
        elif "max_devices" not in rules:
            rules["max_devices"] = TOKEN_MAX_DEVICES_FAMILY if kind == "family" else TOKEN_MAX_DEVICES_STUDENT
        return AccessToken(
            token=self.generate_unique_token(),
            kind=kind,
            subject_ids=list(subject_ids),
            event_id=event_id,
            owner_contact=owner_contact,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(days=days),
            is_active=True,
            usage_count=0,
            token_metadata=metadata,
            access_rules=rules,
        )

    def _persist(self, record: AccessToken, replaces: Optional[AccessToken] = None,
                 reason: str = "rotated") -> AccessToken:
        # The unique index is the final arbiter when two writers draw the same value
        for attempt in range(1, self.max_attempts + 1):
            try:
                if replaces is not None:
                    return self.store.rotate_token(replaces.id, record, self.clock(), reason)
                return self.store.create_token(record)
            except TokenCollision:
                logger.warning(f"[tokens] insert collision on attempt {attempt}: {mask_token(record.token)}")
                record.token = self.generate_unique_token()
        raise ExhaustedRetries(self.max_attempts)

    def _issue(self, kind: str, subject_ids: List[str], event_id: Optional[str],
               owner_contact: Optional[str], options: TokenOptions,
               existing: Optional[AccessToken]) -> Tuple[AccessToken, str]:
        if existing is not None and not options.rotate_existing:
            return existing, "reused"
        record = self._build(kind, subject_ids, event_id, owner_contact, options, inherit=existing)
        saved = self._persist(record, replaces=existing)
        action = "rotated" if existing is not None else "generated"
        logger.info(
            f"[tokens] {kind} token {action}: {mask_token(saved.token)} "
            f"subjects={len(saved.subject_ids or [])} expires_at={saved.expires_at.isoformat()}"
        )
        return saved, action

    # ============ Issuing ============

    def issue_student_token(self, student_id: str, options: Optional[TokenOptions] = None) -> AccessToken:
        students = self.store.get_students([student_id])
        if not students:
            raise SubjectNotFound(f"Student not found: {student_id}")
        token, _ = self._issue_for_student(students[0], options or TokenOptions())
        return token

    def _issue_for_student(self, student: Student, options: TokenOptions) -> Tuple[AccessToken, str]:
        existing = self.store.find_active_student_token(student.id, student.event_id, self.clock())
        return self._issue("student", [student.id], student.event_id, None, options, existing)

    def issue_family_token(self, student_ids: List[str], family_contact: str,
                           options: Optional[TokenOptions] = None) -> AccessToken:
        token, _ = self._issue_family(student_ids, family_contact, options or TokenOptions())
        return token

    def _issue_family(self, student_ids: List[str], family_contact: str,
                      options: TokenOptions) -> Tuple[AccessToken, str]:
        contact = (family_contact or "").strip().lower()
        if not contact:
            raise InvalidTokenRequest("Family contact is required")
        ids = list(dict.fromkeys(student_ids or []))
        if not ids:
            raise InvalidTokenRequest("At least one student is required")
        students = self.store.get_students(ids)
        if len(students) != len(ids):
            raise SubjectNotFound("Some students not found")
        event_ids = {s.event_id for s in students}
        if len(event_ids) > 1:
            raise InvalidTokenRequest("Students must belong to the same event for family access")
        event_id = event_ids.pop()
        existing = self.store.find_active_family_token(contact, event_id, self.clock())
        return self._issue("family", ids, event_id, contact, options, existing)

    def issue_group_token(self, student_ids: List[str], options: Optional[TokenOptions] = None) -> AccessToken:
        ids = list(dict.fromkeys(student_ids or []))
        if not ids:
            raise InvalidTokenRequest("At least one student is required")
        students = self.store.get_students(ids)
        if len(students) != len(ids):
            raise SubjectNotFound("Some students not found")
        event_ids = {s.event_id for s in students}
        if len(event_ids) > 1:
            raise InvalidTokenRequest("Students must belong to the same event for group access")
        token, _ = self._issue("group", ids, event_ids.pop(), None, options or TokenOptions(), None)
        return token

    def issue_folder_token(self, folder_id: str, options: Optional[TokenOptions] = None) -> AccessToken:
        folders = self.store.get_folders([folder_id])
        if not folders:
            raise SubjectNotFound(f"Folder not found: {folder_id}")
        token, _ = self._issue("folder", [folder_id], folders[0].event_id, None, options or TokenOptions(), None)
        return token

    def issue_event_token(self, event_id: str, options: Optional[TokenOptions] = None) -> AccessToken:
        if self.store.get_event(event_id) is None:
            raise SubjectNotFound(f"Event not found: {event_id}")
        existing = self.store.find_active_event_token(event_id, self.clock())
        token, _ = self._issue("event", [], event_id, None, options or TokenOptions(), existing)
        return token

    # ============ Bulk ============

    def generate_bulk_tokens(self, event_id: str, kind: str = "student",
                             options: Optional[TokenOptions] = None) -> BulkResult:
        options = options or TokenOptions()
        if kind not in ("student", "family", "event"):
            raise InvalidTokenRequest(f"Bulk generation does not support kind '{kind}'")
        if self.store.get_event(event_id) is None:
            raise SubjectNotFound(f"Event not found: {event_id}")

        if kind == "event":
            result = BulkResult(total_requested=1)
            self._bulk_unit(result, event_id, lambda: self._issue(
                "event", [], event_id, None, options,
                self.store.find_active_event_token(event_id, self.clock())))
            return result

        students = self.store.list_event_students(event_id)
        if kind == "student":
            return self._bulk_students(students, options)

        result = BulkResult(total_requested=len(students))
        families: Dict[str, List[str]] = defaultdict(list)
        for student in students:
            email = (student.parent_email or "").strip().lower()
            if not email:
                result.failed.append({"identifier": student.full_name or student.id, "error": "No parent email provided"})
                continue
            families[email].append(student.id)
        for email, ids in families.items():
            self._bulk_unit(result, email, lambda ids=ids, email=email: self._issue_family(ids, email, options))
        logger.info(f"[tokens] bulk family generation for event {event_id}: {result.summary}")
        return result

    def generate_tokens_for_subjects(self, student_ids: List[str],
                                     options: Optional[TokenOptions] = None) -> BulkResult:
        ids = list(dict.fromkeys(student_ids or []))
        students = {s.id: s for s in self.store.get_students(ids)}
        result = self._bulk_students([students[i] for i in ids if i in students], options or TokenOptions())
        result.total_requested = len(ids)
        for sid in ids:
            if sid not in students:
                result.failed.append({"identifier": sid, "error": "Student not found"})
        return result

    def _bulk_students(self, students: List[Student], options: TokenOptions) -> BulkResult:
        result = BulkResult(total_requested=len(students))
        for student in students:
            self._bulk_unit(result, student.id, lambda student=student: self._issue_for_student(student, options))
        logger.info(f"[tokens] bulk student generation: {result.summary}")
        return result

    def _bulk_unit(self, result: BulkResult, identifier: str, work: Callable[[], Tuple[AccessToken, str]]):
        try:
            token, action = work()
        except Exception as ex:
            logger.warning(f"[tokens] bulk unit {identifier} failed: {ex}")
            result.failed.append({"identifier": identifier, "error": str(ex) or ex.__class__.__name__})
            return
        result.successful[identifier] = token
        if action == "generated":
            result.tokens_generated += 1
        elif action == "rotated":
            result.tokens_rotated += 1
        else:
            result.tokens_reused += 1

    # ============ Validation ============

    def inspect_token(self, value: Optional[str]) -> TokenInspection:
        """Detailed lifecycle state; for internal and admin use only."""
        if not is_well_formed(value, TOKEN_MIN_LENGTH):
            return TokenInspection(TokenState.UNKNOWN)
        token = self.store.get_by_value(value)
        if token is None and self.legacy is not None:
            token = self.legacy.find(value)
        if token is None:
            return TokenInspection(TokenState.UNKNOWN)
        now = self.clock()
        remaining = days_until(token.expires_at, now)
        if not token.is_active:
            state = TokenState.DEACTIVATED
        elif token.expires_at is not None and token.expires_at <= now:
            state = TokenState.EXPIRED
        else:
            state = TokenState.ACTIVE
        return TokenInspection(state, token, token.source, remaining)

    def validate_token(self, value: Optional[str]) -> ValidationResult:
        inspection = self.inspect_token(value)
        if inspection.state is not TokenState.ACTIVE:
            if inspection.state is TokenState.EXPIRED:
                logger.info(f"[tokens] expired token presented: {mask_token(value)}")
            elif inspection.state is TokenState.DEACTIVATED:
                logger.warning(f"[tokens] deactivated token presented: {mask_token(value)}")
            else:
                logger.info(f"[tokens] unknown token presented: {mask_token(value)}")
            return ValidationResult.invalid()

        token = inspection.token
        now = self.clock()
        result = ValidationResult(
            is_valid=True,
            access_level=ACCESS_LEVELS.get(token.kind, "none"),
            expires_in_days=inspection.expires_in_days,
            token=token,
        )
        self._resolve_subjects(token, result)

        if inspection.expires_in_days is None:
            result.warnings.append("Token does not expire")
        elif inspection.expires_in_days <= self.warning_days:
            result.warnings.append(f"Token expires in {inspection.expires_in_days} days")

        if inspection.source == "access_tokens":
            self.usage.record(token.id, now)
        return result

    def _resolve_subjects(self, token: AccessToken, result: ValidationResult):
        ids = list(token.subject_ids or [])
        if token.kind == "folder":
            result.subjects = [f.to_dict() for f in self.store.get_folders(ids)]
        elif token.kind in ("student", "family", "group"):
            result.subjects = [s.to_dict() for s in self.store.get_students(ids)]
        if len(result.subjects) == 1:
            result.subject = result.subjects[0]
        event = self.store.get_event(token.event_id)
        result.event = event.to_dict() if event is not None else None

    # ============ Rotation / revocation ============

    def rotate_token(self, token_id: str, expiry_days: Optional[int] = None,
                     reason: str = "rotated") -> AccessToken:
        old = self.store.get_by_id(token_id)
        if old is None:
            raise TokenNotFound(f"Token not found: {token_id}")
        if old.replaced_by_id:
            replacement = self.store.get_by_id(old.replaced_by_id)
            if replacement is not None:
                return replacement
        if not old.is_active:
            raise TokenDeactivated(f"Token {token_id} was revoked and cannot be rotated")
        options = TokenOptions(
            expiry_days=expiry_days,
            distribution_method=(old.token_metadata or {}).get("distribution_method", "direct"),
            metadata={"rotated_at": self.clock().isoformat(), "rotation_reason": reason},
        )
        record = self._build(old.kind, list(old.subject_ids or []), old.event_id, old.owner_contact,
                             options, inherit=old)
        saved = self._persist(record, replaces=old, reason=reason)
        logger.info(f"[tokens] rotated {mask_token(old.token)} -> {mask_token(saved.token)} ({reason})")
        return saved

    def revoke_token(self, token_id: str, reason: str = "revoked") -> AccessToken:
        row = self.store.deactivate_token(token_id, self.clock(), reason)
        logger.info(f"[tokens] revoked {mask_token(row.token)} ({reason})")
        return row

    def get_expiring_tokens(self, days_before_expiry: Optional[int] = None) -> dict:
        days = self.warning_days if days_before_expiry is None else days_before_expiry
        now = self.clock()
        tokens = self.store.list_expiring(now + timedelta(days=days), now)
        by_kind: Dict[str, int] = {}
        for t in tokens:
            by_kind[t.kind] = by_kind.get(t.kind, 0) + 1
        return {"tokens": tokens, "by_kind": by_kind, "total_count": len(tokens)}

    def rotate_expiring_tokens(self, days_before_expiry: Optional[int] = None) -> dict:
        days = self.warning_days if days_before_expiry is None else days_before_expiry
        # Replacements must land outside the window or a second sweep would rotate them again
        expiry_days = max(self.default_expiry_days, days + 1)
        expiring = self.get_expiring_tokens(days)["tokens"]
        errors: List[Dict[str, str]] = []
        new_tokens: Dict[str, AccessToken] = {}
        for token in expiring:
            try:
                new_tokens[token.id] = self.rotate_token(token.id, expiry_days=expiry_days, reason="expiring")
            except Exception as ex:
                logger.warning(f"[tokens] rotation of {mask_token(token.token)} failed: {ex}")
                errors.append({"token_id": token.id, "error": str(ex)})
        logger.info(f"[tokens] expiring sweep: candidates={len(expiring)} rotated={len(new_tokens)} failed={len(errors)}")
        return {"rotated": len(new_tokens), "failed": len(errors), "errors": errors, "new_tokens": new_tokens}

    def token_metrics(self) -> dict:
        now = self.clock()
        return self.store.count_by_state(now, now + timedelta(days=self.warning_days))


def validate_kind(kind: str) -> str:
    kind = (kind or "").strip().lower()
    if kind not in TOKEN_KINDS:
        raise InvalidTokenRequest(f"Unknown token kind '{kind}'")
    return kind
