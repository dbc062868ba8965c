"""
Access Token Admin Router
Issue, list, rotate and revoke family gallery tokens.
"""
from typing import Optional, List

from fastapi import APIRouter, Request, Query, Depends
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from core.auth import client_ip, get_admin_from_request
from core.config import logger
from core.services import get_token_service
from utils.access_tokens import AccessTokenService, TokenOptions, validate_kind
from utils.rate_limit import check_admin_rate_limit
from utils.token_errors import (
    ExhaustedRetries,
    InvalidTokenRequest,
    StoreUnavailable,
    SubjectNotFound,
    TokenDeactivated,
    TokenError,
    TokenNotFound,
)
from utils.tokens import portal_url, qr_code_data, qr_code_png

router = APIRouter(prefix="/api/admin/tokens", tags=["access-tokens"])


# ============ Pydantic Models ============

class TokenOptionsIn(BaseModel):
    expiry_days: Optional[int] = Field(None, ge=1, le=365)
    distribution_method: str = "direct"
    notes: Optional[str] = None
    rotate_existing: bool = False
    max_devices: Optional[int] = Field(None, ge=1, le=50)

    def to_options(self, admin: str) -> TokenOptions:
        return TokenOptions(
            expiry_days=self.expiry_days,
            distribution_method=self.distribution_method,
            generated_by=admin,
            notes=self.notes,
            rotate_existing=self.rotate_existing,
            max_devices=self.max_devices,
        )


class StudentTokenRequest(TokenOptionsIn):
    student_id: str


class FamilyTokenRequest(TokenOptionsIn):
    student_ids: List[str]
    family_contact: str


class EventTokenRequest(TokenOptionsIn):
    event_id: str


class BulkTokenRequest(TokenOptionsIn):
    event_id: str
    kind: str = "student"


class SubjectsTokenRequest(TokenOptionsIn):
    student_ids: List[str]


class RotateTokenRequest(BaseModel):
    expiry_days: Optional[int] = Field(None, ge=1, le=365)
    reason: Optional[str] = None


class RevokeTokenRequest(BaseModel):
    reason: Optional[str] = None


class RotateExpiringRequest(BaseModel):
    days: Optional[int] = Field(None, ge=0, le=90)


# ============ Helper Functions ============

def token_error_response(ex: TokenError) -> JSONResponse:
    if isinstance(ex, (StoreUnavailable, ExhaustedRetries)):
        logger.error(f"[tokens] {ex.__class__.__name__}: {ex}")
        body = {"error": "Service temporarily unavailable", "retryable": True}
        if isinstance(ex, ExhaustedRetries):
            body["error"] = str(ex)
        return JSONResponse(body, status_code=503)
    if isinstance(ex, (SubjectNotFound, TokenNotFound)):
        return JSONResponse({"error": str(ex) or "Not found"}, status_code=404)
    if isinstance(ex, TokenDeactivated):
        return JSONResponse({"error": str(ex)}, status_code=409)
    if isinstance(ex, InvalidTokenRequest):
        return JSONResponse({"error": str(ex)}, status_code=400)
    return JSONResponse({"error": str(ex) or "Token request failed"}, status_code=400)


def require_admin(request: Request):
    """Returns (admin, None) or (None, error_response)."""
    admin = get_admin_from_request(request)
    if not admin:
        return None, JSONResponse({"error": "Unauthorized"}, status_code=401)
    allowed, message = check_admin_rate_limit(client_ip(request))
    if not allowed:
        return None, JSONResponse({"error": message}, status_code=429)
    return admin, None


def _issued(token) -> dict:
    return {
        "token": token.to_dict(mask=False),
        "portal_url": portal_url(token.token),
        "qr_code_data": qr_code_data(token.token),
    }


# ============ Issuing ============

@router.post("/student")
async def create_student_token(request: Request, data: StudentTokenRequest,
                               tokens: AccessTokenService = Depends(get_token_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        token = tokens.issue_student_token(data.student_id, data.to_options(admin))
    except TokenError as ex:
        return token_error_response(ex)
    return _issued(token)


@router.post("/family")
async def create_family_token(request: Request, data: FamilyTokenRequest,
                              tokens: AccessTokenService = Depends(get_token_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        token = tokens.issue_family_token(data.student_ids, data.family_contact, data.to_options(admin))
    except TokenError as ex:
        return token_error_response(ex)
    return _issued(token)


@router.post("/event")
async def create_event_token(request: Request, data: EventTokenRequest,
                             tokens: AccessTokenService = Depends(get_token_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        token = tokens.issue_event_token(data.event_id, data.to_options(admin))
    except TokenError as ex:
        return token_error_response(ex)
    return _issued(token)


@router.post("/bulk")
async def create_bulk_tokens(request: Request, data: BulkTokenRequest,
                             tokens: AccessTokenService = Depends(get_token_service)):
    """Generate tokens for every student (or family) of an event"""
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        result = tokens.generate_bulk_tokens(data.event_id, kind=validate_kind(data.kind), options=data.to_options(admin))
    except TokenError as ex:
        return token_error_response(ex)
    return result.to_dict()


@router.post("/subjects")
async def create_subject_tokens(request: Request, data: SubjectsTokenRequest,
                                tokens: AccessTokenService = Depends(get_token_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        result = tokens.generate_tokens_for_subjects(data.student_ids, data.to_options(admin))
    except TokenError as ex:
        return token_error_response(ex)
    return result.to_dict()


# ============ Listing / inspection ============

@router.get("")
async def list_tokens(
    request: Request,
    event_id: Optional[str] = Query(None),
    kind: Optional[str] = Query(None),
    include_inactive: bool = Query(False),
    limit: int = Query(200, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    tokens: AccessTokenService = Depends(get_token_service),
):
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        rows = tokens.store.list_tokens(event_id=event_id, kind=kind, include_inactive=include_inactive,
                                        limit=limit, offset=offset)
    except TokenError as ex:
        return token_error_response(ex)
    return {"tokens": [t.to_dict() for t in rows], "limit": limit, "offset": offset}


@router.get("/expiring")
async def list_expiring_tokens(request: Request, days: Optional[int] = Query(None, ge=0, le=90),
                               tokens: AccessTokenService = Depends(get_token_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        data = tokens.get_expiring_tokens(days)
    except TokenError as ex:
        return token_error_response(ex)
    return {
        "tokens": [t.to_dict() for t in data["tokens"]],
        "by_kind": data["by_kind"],
        "total_count": data["total_count"],
    }


@router.post("/rotate-expiring")
async def rotate_expiring_tokens(request: Request, data: Optional[RotateExpiringRequest] = None,
                                 tokens: AccessTokenService = Depends(get_token_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        result = tokens.rotate_expiring_tokens(data.days if data else None)
    except TokenError as ex:
        return token_error_response(ex)
    logger.info(f"[tokens] expiring sweep triggered by {admin}")
    return {
        "rotated": result["rotated"],
        "failed": result["failed"],
        "errors": result["errors"],
        "new_tokens": {old_id: t.to_dict() for old_id, t in result["new_tokens"].items()},
    }


@router.get("/metrics")
async def token_metrics(request: Request, tokens: AccessTokenService = Depends(get_token_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        return tokens.token_metrics()
    except TokenError as ex:
        return token_error_response(ex)


@router.get("/inspect/{token}")
async def inspect_token(token: str, request: Request, tokens: AccessTokenService = Depends(get_token_service)):
    """Detailed lifecycle state (unknown/active/expired/deactivated) for support staff"""
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        return tokens.inspect_token(token).to_dict()
    except TokenError as ex:
        return token_error_response(ex)


# ============ Rotation / revocation ============

@router.post("/{token_id}/rotate")
async def rotate_token(token_id: str, request: Request, data: Optional[RotateTokenRequest] = None,
                       tokens: AccessTokenService = Depends(get_token_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    data = data or RotateTokenRequest()
    try:
        token = tokens.rotate_token(token_id, expiry_days=data.expiry_days, reason=data.reason or "rotated")
    except TokenError as ex:
        return token_error_response(ex)
    return _issued(token)


@router.post("/{token_id}/revoke")
async def revoke_token(token_id: str, request: Request, data: Optional[RevokeTokenRequest] = None,
                       tokens: AccessTokenService = Depends(get_token_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        token = tokens.revoke_token(token_id, reason=(data.reason if data and data.reason else "revoked"))
    except TokenError as ex:
        return token_error_response(ex)
    return {"ok": True, "token": token.to_dict()}


@router.get("/{token_id}/qr.png")
async def token_qr_code(token_id: str, request: Request, tokens: AccessTokenService = Depends(get_token_service)):
    admin, denied = require_admin(request)
    if denied:
        return denied
    try:
        token = tokens.store.get_by_id(token_id)
    except TokenError as ex:
        return token_error_response(ex)
    if token is None:
        return JSONResponse({"error": "Token not found"}, status_code=404)
    return Response(content=qr_code_png(token.token), media_type="image/png")
