"""
Family Portal Router
Public, token-authenticated entry points. Every invalid token (unknown,
expired, deactivated) gets the same response.
"""
from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from core.auth import client_ip
from core.config import logger
from core.services import get_token_service
from utils.access_tokens import AccessTokenService
from utils.rate_limit import check_portal_rate_limit
from utils.token_errors import StoreUnavailable
from utils.tokens import mask_token, qr_code_png

router = APIRouter(tags=["family"])

INVALID_LINK = {"error": "Invalid or expired link", "isValid": False, "accessLevel": "none"}


class ValidateTokenRequest(BaseModel):
    token: str


def _rate_limited(request: Request):
    allowed, message = check_portal_rate_limit(client_ip(request))
    if not allowed:
        return JSONResponse({"error": message}, status_code=429)
    return None


def service_unavailable() -> JSONResponse:
    return JSONResponse({"error": "Service temporarily unavailable", "retryable": True}, status_code=503)


@router.get("/f/{token}")
async def family_portal(token: str, request: Request, tokens: AccessTokenService = Depends(get_token_service)):
    """Canonical family entry point for a gallery link"""
    limited = _rate_limited(request)
    if limited:
        return limited
    try:
        result = tokens.validate_token(token)
    except StoreUnavailable:
        logger.error(f"[family] store unavailable while opening {mask_token(token)}")
        return service_unavailable()
    if not result.is_valid:
        return JSONResponse(INVALID_LINK, status_code=404)
    return result.to_dict()


@router.post("/api/family/validate")
async def validate_family_token(payload: ValidateTokenRequest, request: Request,
                                tokens: AccessTokenService = Depends(get_token_service)):
    limited = _rate_limited(request)
    if limited:
        return limited
    try:
        result = tokens.validate_token(payload.token.strip())
    except StoreUnavailable:
        logger.error(f"[family] store unavailable while validating {mask_token(payload.token)}")
        return service_unavailable()
    return result.to_dict()


@router.get("/api/family/qr/{token}.png")
async def family_qr_code(token: str, request: Request, tokens: AccessTokenService = Depends(get_token_service)):
    limited = _rate_limited(request)
    if limited:
        return limited
    try:
        result = tokens.validate_token(token)
    except StoreUnavailable:
        return service_unavailable()
    if not result.is_valid:
        return JSONResponse(INVALID_LINK, status_code=404)
    return Response(
        content=qr_code_png(token),
        media_type="image/png",
        headers={"Cache-Control": "private, max-age=300"},
    )
