"""
Token distribution: render a message per channel and deliver the portal link.

Every attempt is written to token_distribution_log. Nothing in a batch is
atomic: a render or send failure is recorded against its recipient and the
loop moves on. When an outbound channel is not configured the rendered
message is logged instead of sent, so the batch stays observable.
"""
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from core.config import logger, utcnow
from models.access_token import AccessToken, DistributionRecord, DISTRIBUTION_METHODS
from models.school import Event, Student
from utils.access_tokens import AccessTokenService, TokenOptions
from utils.emailing import send_email_smtp, smtp_configured
from utils.message_templates import QR_CID, MessageContext, RenderedMessage, TemplateRenderError, render_message
from utils.messaging import (
    looks_like_phone,
    normalize_phone,
    send_sms,
    send_whatsapp,
    sms_configured,
    whatsapp_configured,
)
from utils.token_errors import InvalidTokenRequest, SubjectNotFound, TokenError
from utils.tokens import days_until, mask_token, portal_url, qr_code_data, qr_code_png

STUDENT_KINDS = ("student", "family", "group")


# ============ Channels ============

class Channel:
    name = ""
    outbound = True

    def available(self) -> bool:
        return True

    def recipients(self, token: AccessToken, students: List[Student]) -> List[str]:
        return [token.owner_contact or self.name]

    def send(self, recipient: str, message: RenderedMessage, token: AccessToken) -> dict:
        return {"ok": True}


class EmailChannel(Channel):
    name = "email"

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = base_url

    def available(self) -> bool:
        return smtp_configured()

    def recipients(self, token, students):
        out: List[str] = []
        for email in [token.owner_contact] + [s.parent_email for s in students]:
            email = (email or "").strip().lower()
            if email and "@" in email and email not in out:
                out.append(email)
        return out

    def send(self, recipient, message, token):
        attachments = None
        if f"cid:{QR_CID}" in message.body:
            attachments = [{
                "filename": "gallery-qr.png",
                "mime_type": "image/png",
                "content": qr_code_png(token.token, self.base_url),
                "cid": QR_CID,
            }]
        ok = send_email_smtp(recipient, message.subject, message.body, message.text, attachments=attachments)
        return {"ok": ok} if ok else {"ok": False, "error": "SMTP delivery failed"}


class SmsChannel(Channel):
    name = "sms"

    def available(self) -> bool:
        return sms_configured()

    def recipients(self, token, students):
        out: List[str] = []
        candidates = [s.parent_phone for s in students]
        if looks_like_phone(token.owner_contact):
            candidates.insert(0, token.owner_contact)
        for phone in candidates:
            phone = normalize_phone(phone)
            if phone and phone not in out:
                out.append(phone)
        return out

    def send(self, recipient, message, token):
        return send_sms(recipient, message.body)


class WhatsAppChannel(SmsChannel):
    name = "whatsapp"

    def available(self) -> bool:
        return whatsapp_configured()

    def send(self, recipient, message, token):
        return send_whatsapp(recipient, message.body)


class PrintChannel(Channel):
    """Printed cards: the QR payload is the deliverable, nothing is sent."""
    name = "print"
    outbound = False

    def send(self, recipient, message, token):
        return {"ok": True, "qr_code_data": qr_code_data(token.token)}


class DirectChannel(Channel):
    name = "direct"
    outbound = False


def default_channels(base_url: Optional[str] = None) -> Dict[str, Channel]:
    return {c.name: c for c in (EmailChannel(base_url), SmsChannel(), WhatsAppChannel(), PrintChannel(), DirectChannel())}


# ============ Requests / results ============

@dataclass
class DistributionRequest:
    token_ids: List[str]
    method: str = "email"
    template_id: str = "family_access"
    custom_message: Optional[str] = None
    dry_run: bool = False
    distributed_by: Optional[str] = None


@dataclass
class DistributionResult:
    request_id: str
    total_requested: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    distribution_logs: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self):
        return {
            "request_id": self.request_id,
            "total_requested": self.total_requested,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "distribution_logs": self.distribution_logs,
            "errors": self.errors,
        }


def family_name_from_contact(contact: Optional[str]) -> str:
    contact = (contact or "").strip()
    if "@" not in contact:
        return "Family"
    local = contact.split("@", 1)[0]
    return local.capitalize() if local else "Family"


class DistributionService:
    def __init__(
        self,
        store,
        tokens: AccessTokenService,
        clock: Callable = utcnow,
        channels: Optional[Dict[str, Channel]] = None,
        base_url: Optional[str] = None,
    ):
        self.store = store
        self.tokens = tokens
        self.clock = clock
        self.channels = channels if channels is not None else default_channels(base_url)
        self.base_url = base_url

    def _channel(self, method: str) -> Channel:
        if method not in DISTRIBUTION_METHODS or method not in self.channels:
            raise InvalidTokenRequest(f"Unsupported distribution method '{method}'")
        return self.channels[method]

    def build_context(self, token: AccessToken, students: List[Student], event: Optional[Event],
                      custom_message: Optional[str] = None, **overrides) -> MessageContext:
        contact = token.owner_contact or next((s.parent_email for s in students if s.parent_email), None)
        link = portal_url(token.token, self.base_url)
        ctx = MessageContext(
            family_name=family_name_from_contact(contact),
            event_name=event.name if event is not None else "",
            school_name=event.school_name if event is not None else None,
            students=[{"name": s.full_name} for s in students],
            multiple_students=len(students) > 1,
            portal_url=link,
            qr_code_data=link,
            expires_in_days=days_until(token.expires_at, self.clock()),
            custom_message=custom_message,
            photographer_contact=event.photographer_contact if event is not None else None,
        )
        for key, value in overrides.items():
            setattr(ctx, key, value)
        return ctx

    # ============ Distribution ============

    def distribute_tokens(self, request: DistributionRequest) -> DistributionResult:
        channel = self._channel(request.method)
        result = DistributionResult(request_id=uuid.uuid4().hex, total_requested=len(request.token_ids or []))
        by_id = {t.id: t for t in self.store.get_many(request.token_ids or [])}
        for token_id in request.token_ids or []:
            token = by_id.get(token_id)
            if token is None:
                self._skip(result, token_id, "Token not found")
                continue
            try:
                self._deliver(result, token, channel, request)
            except TokenError as ex:
                logger.warning(f"[distribution] {mask_token(token.token)} failed: {ex}")
                result.failed += 1
                result.errors.append({"token_id": token.id, "error": str(ex) or ex.__class__.__name__})
        logger.info(
            f"[distribution] {result.request_id} via {channel.name}: requested={result.total_requested} "
            f"ok={result.successful} failed={result.failed} skipped={result.skipped}"
        )
        return result

    def _skip(self, result: DistributionResult, token_id: str, reason: str):
        result.skipped += 1
        result.distribution_logs.append({"token_id": token_id, "status": "skipped", "reason": reason})

    def _deliver(self, result: DistributionResult, token: AccessToken, channel: Channel,
                 request: DistributionRequest, **overrides):
        now = self.clock()
        if not token.is_active or (token.expires_at is not None and token.expires_at <= now):
            self._skip(result, token.id, "Token is not active")
            return
        students = self.store.get_students(token.subject_ids or []) if token.kind in STUDENT_KINDS else []
        recipients = channel.recipients(token, students)
        if not recipients:
            self._skip(result, token.id, "No recipients")
            return
        event = self.store.get_event(token.event_id)
        ctx = self.build_context(token, students, event, request.custom_message, **overrides)

        for recipient in recipients:
            entry = {"token_id": token.id, "token": mask_token(token.token), "recipient": recipient, "method": channel.name}
            try:
                message = render_message(request.template_id, channel.name, ctx, store=self.store)
            except TemplateRenderError as ex:
                result.failed += 1
                result.errors.append({"token_id": token.id, "recipient": recipient, "error": str(ex)})
                entry["status"] = "failed"
                result.distribution_logs.append(entry)
                self._record(token, channel.name, recipient, "failed", str(ex), request, result)
                continue

            if request.dry_run:
                status, detail = "pending", "dry run"
                result.successful += 1
                entry["preview"] = message.to_dict()
            elif channel.outbound and not channel.available():
                status, detail = "pending", f"{channel.name} channel not configured"
                result.skipped += 1
                entry["preview"] = message.to_dict()
                logger.info(
                    f"[distribution] {channel.name} unavailable, dry run for {mask_token(token.token)} -> {recipient}: "
                    f"{message.subject} | {message.text[:200]}"
                )
            else:
                try:
                    outcome = channel.send(recipient, message, token)
                except Exception as ex:
                    outcome = {"ok": False, "error": str(ex)}
                if outcome.get("ok"):
                    status, detail = "sent", None
                    result.successful += 1
                else:
                    status, detail = "failed", outcome.get("error") or "send failed"
                    result.failed += 1
                    result.errors.append({"token_id": token.id, "recipient": recipient, "error": detail})

            entry["status"] = status
            if detail:
                entry["detail"] = detail
            result.distribution_logs.append(entry)
            self._record(token, channel.name, recipient, status, detail, request, result)

    def _record(self, token, method, recipient, status, detail, request, result):
        try:
            self.store.add_distribution_record(DistributionRecord(
                token_id=token.id,
                method=method,
                recipient=recipient,
                status=status,
                message=detail,
                request_id=result.request_id,
                distributed_by=request.distributed_by,
                details={"template_id": request.template_id, "dry_run": request.dry_run},
                sent_at=self.clock(),
            ))
        except Exception as ex:
            logger.warning(f"[distribution] failed to log attempt for {mask_token(token.token)}: {ex}")
            result.errors.append({"token_id": token.id, "recipient": recipient, "error": f"log write failed: {ex}"})

    # ============ Event / maintenance flows ============

    def generate_event_distribution(self, event_id: str, method: str = "email",
                                    options: Optional[TokenOptions] = None,
                                    template_id: str = "family_access",
                                    custom_message: Optional[str] = None,
                                    dry_run: bool = False,
                                    distributed_by: Optional[str] = None) -> dict:
        self._channel(method)
        event = self.store.get_event(event_id)
        if event is None:
            raise SubjectNotFound(f"Event not found: {event_id}")
        if event.status != "active":
            raise InvalidTokenRequest("Event must be active to distribute access links")

        options = options or TokenOptions(distribution_method=method, generated_by=distributed_by)
        bulk = self.tokens.generate_bulk_tokens(event_id, kind="family", options=options)
        dist = self.distribute_tokens(DistributionRequest(
            token_ids=[t.id for t in bulk.successful.values()],
            method=method,
            template_id=template_id,
            custom_message=custom_message,
            dry_run=dry_run,
            distributed_by=distributed_by,
        ))
        links = len(bulk.successful)
        summary = {
            "event_id": event.id,
            "event_name": event.name,
            "method": method,
            "total_families": links + len(bulk.failed),
            "links_generated": links,
            "distributions_sent": dist.successful,
            "delivery_rate": round(dist.successful / links * 100, 1) if links else 0.0,
            "generated_at": self.clock().isoformat(),
        }
        logger.info(f"[distribution] event {event.id} summary: {summary}")
        return {"summary": summary, "generation": bulk.summary, "generation_errors": bulk.failed,
                "distribution": dist.to_dict()}

    def send_expiry_warnings(self, days_before_expiry: int = 7, method: str = "email",
                             dry_run: bool = False) -> dict:
        channel = self._channel(method)
        now = self.clock()
        expiring = self.tokens.get_expiring_tokens(days_before_expiry)["tokens"]
        result = DistributionResult(request_id=uuid.uuid4().hex, total_requested=len(expiring))
        request = DistributionRequest(token_ids=[t.id for t in expiring], method=method,
                                      template_id="token_expiry_warning", dry_run=dry_run,
                                      distributed_by="expiry-warning")
        rotated = would_rotate = 0
        for token in expiring:
            target, overrides = token, {"expires_in_days": days_until(token.expires_at, now)}
            try:
                if (token.expires_at - now).total_seconds() <= 24 * 3600:
                    if dry_run:
                        # Nothing is rotated; the preview keeps the current link
                        would_rotate += 1
                    else:
                        target = self.tokens.rotate_token(token.id, reason="expiring")
                        rotated += 1
                        overrides["new_access_link"] = portal_url(target.token, self.base_url)
                        overrides["new_expiry_days"] = days_until(target.expires_at, now)
                self._deliver(result, target, channel, request, **overrides)
            except Exception as ex:
                logger.warning(f"[distribution] expiry warning for {mask_token(token.token)} failed: {ex}")
                result.failed += 1
                result.errors.append({"token_id": token.id, "error": str(ex)})
        logger.info(f"[distribution] expiry warnings: sent={result.successful} rotated={rotated} failed={result.failed}")
        return {
            "warnings_sent": result.successful,
            "tokens_rotated": rotated,
            "would_rotate": would_rotate,
            "errors": result.errors,
            "skipped": result.skipped,
            "distribution_logs": result.distribution_logs,
        }

    def distribution_history(self, token_id: str, limit: int = 100) -> List[dict]:
        return [r.to_dict() for r in self.store.distribution_history(token_id, limit)]
