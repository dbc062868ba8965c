"""
Distribution Router
Send gallery links to families and manage message templates.
"""
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Request, Query, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from core.config import utcnow
from core.services import get_distribution_service
from models.access_token import DistributionTemplate, DISTRIBUTION_METHODS
from routers.access_tokens import TokenOptionsIn, require_admin, token_error_response
from utils.distribution import DistributionRequest, DistributionService
from utils.message_templates import (
    MessageContext,
    TemplateRenderError,
    compile_block_template,
    list_builtin_templates,
    render_message,
    BUILTIN_TEMPLATES,
)
from utils.token_errors import TokenError

router = APIRouter(prefix="/api/admin/distribution", tags=["distribution"])


# ============ Pydantic Models ============

class SendRequest(BaseModel):
    token_ids: List[str]
    method: str = "email"
    template_id: str = "family_access"
    custom_message: Optional[str] = None
    dry_run: bool = False


class EventDistributionRequest(TokenOptionsIn):
    event_id: str
    method: str = "email"
    template_id: str = "family_access"
    custom_message: Optional[str] = None
    dry_run: bool = False


class ExpiryWarningRequest(BaseModel):
    days_before_expiry: int = Field(7, ge=1, le=90)
    method: str = "email"
    dry_run: bool = False


class TemplateIn(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    name: str
    method: str = "email"
    subject: Optional[str] = None
    content: str
    language: str = "en"
    is_active: bool = True


class PreviewRequest(BaseModel):
    template_id: Optional[str] = None
    content: Optional[str] = None
    subject: Optional[str] = None
    method: str = "email"
    variables: Dict[str, Any] = {}


# ============ Sending ============

@router.post("/send")
async def send_distribution(request: Request, data: SendRequest,
                            dist: DistributionService = Depends(get_distribution_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        result = dist.distribute_tokens(DistributionRequest(
            token_ids=data.token_ids,
            method=data.method,
            template_id=data.template_id,
            custom_message=data.custom_message,
            dry_run=data.dry_run,
            distributed_by=admin,
        ))
    except TokenError as ex:
        return token_error_response(ex)
    return result.to_dict()


@router.post("/event")
async def distribute_event(request: Request, data: EventDistributionRequest,
                           dist: DistributionService = Depends(get_distribution_service)):
    """Generate family links for a whole event and send them"""
    admin, denied = require_admin(request)
    if denied:
        return denied
    options = data.to_options(admin)
    options.distribution_method = data.method
    try:
        return dist.generate_event_distribution(
            data.event_id,
            method=data.method,
            options=options,
            template_id=data.template_id,
            custom_message=data.custom_message,
            dry_run=data.dry_run,
            distributed_by=admin,
        )
    except TokenError as ex:
        return token_error_response(ex)


@router.post("/expiry-warnings")
async def send_expiry_warnings(request: Request, data: Optional[ExpiryWarningRequest] = None,
                               dist: DistributionService = Depends(get_distribution_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    data = data or ExpiryWarningRequest()
    try:
        return dist.send_expiry_warnings(data.days_before_expiry, method=data.method, dry_run=data.dry_run)
    except TokenError as ex:
        return token_error_response(ex)


@router.get("/history/{token_id}")
async def distribution_history(token_id: str, request: Request, limit: int = Query(100, ge=1, le=500),
                               dist: DistributionService = Depends(get_distribution_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        return {"token_id": token_id, "history": dist.distribution_history(token_id, limit)}
    except TokenError as ex:
        return token_error_response(ex)


# ============ Templates ============

@router.get("/templates")
async def list_templates(request: Request, dist: DistributionService = Depends(get_distribution_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        custom = [t.to_dict() for t in dist.store.list_templates()]
    except TokenError as ex:
        return token_error_response(ex)
    return {"templates": list_builtin_templates() + custom}


@router.post("/templates")
async def save_template(request: Request, data: TemplateIn,
                        dist: DistributionService = Depends(get_distribution_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    if data.id in BUILTIN_TEMPLATES:
        return JSONResponse({"error": "Built-in templates cannot be overwritten"}, status_code=400)
    if data.method not in DISTRIBUTION_METHODS:
        return JSONResponse({"error": f"Unsupported method '{data.method}'"}, status_code=400)
    try:
        compile_block_template(data.content, data.method == "email")
        if data.subject:
            compile_block_template(data.subject)
    except TemplateRenderError as ex:
        return JSONResponse({"error": str(ex)}, status_code=400)
    try:
        saved = dist.store.save_template(DistributionTemplate(
            id=data.id,
            name=data.name,
            method=data.method,
            subject=data.subject,
            content=data.content,
            language=data.language,
            is_active=data.is_active,
            updated_at=utcnow(),
        ))
    except TokenError as ex:
        return token_error_response(ex)
    return saved.to_dict()


@router.post("/templates/preview")
async def preview_template(request: Request, data: PreviewRequest,
                           dist: DistributionService = Depends(get_distribution_service)):
    """Render a stored or ad-hoc template against sample variables"""
    admin, denied = require_admin(request)
    if denied:
        return denied
    known = set(MessageContext.__dataclass_fields__)
    ctx = MessageContext(**{k: v for k, v in (data.variables or {}).items() if k in known})
    if ctx.students and not data.variables.get("multiple_students"):
        ctx.multiple_students = len(ctx.students) > 1
    try:
        if data.content is not None:
            preview = DistributionTemplate(id="preview", name="preview", method=data.method,
                                           subject=data.subject, content=data.content, is_active=True)
            message = render_message("preview", data.method, ctx, store=_SingleTemplate(preview))
        else:
            message = render_message(data.template_id or "family_access", data.method, ctx, store=dist.store)
    except TemplateRenderError as ex:
        return JSONResponse({"error": str(ex)}, status_code=400)
    except TokenError as ex:
        return token_error_response(ex)
    return message.to_dict()


class _SingleTemplate:
    def __init__(self, template: DistributionTemplate):
        self._template = template

    def get_template(self, template_id: str):
        return self._template if template_id == self._template.id else None
