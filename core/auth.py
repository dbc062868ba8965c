import hashlib
import hmac
from typing import Optional
from fastapi import Request

from core import config
from core.config import logger


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth_header or not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def verify_admin_token(token: Optional[str]) -> bool:
    """Plain ADMIN_API_TOKEN compared in constant time, or its sha256 against ADMIN_API_TOKEN_SHA256."""
    if not token:
        return False
    if config.ADMIN_API_TOKEN and hmac.compare_digest(token.encode("utf-8"), config.ADMIN_API_TOKEN.encode("utf-8")):
        return True
    if config.ADMIN_API_TOKEN_SHA256:
        digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
        return any(hmac.compare_digest(digest, h) for h in config.ADMIN_API_TOKEN_SHA256)
    return False


def get_admin_from_request(request: Request) -> Optional[str]:
    """Return an admin principal for audit fields, or None when the request is not authenticated."""
    token = _bearer_token(request)
    if not verify_admin_token(token):
        if token:
            logger.warning(f"[auth] rejected admin token from {client_ip(request)}")
        return None
    return "admin:" + hashlib.sha256(token.encode("utf-8")).hexdigest()[:8]


def client_ip(request: Request) -> str:
    ip = request.client.host if getattr(request, "client", None) else "unknown"
    # Behind a proxy/load balancer the first X-Forwarded-For hop is the client
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip = forwarded.split(",")[0].strip() or ip
    return ip
