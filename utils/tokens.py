"""Token string helpers: generation, masking, expiry math, portal links and QR codes."""
import io
import math
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

import qrcode

from core.config import PORTAL_BASE_URL, TOKEN_MIN_LENGTH

ALPHANUMERIC = string.ascii_uppercase + string.ascii_lowercase + string.digits
HEX_ALPHABET = "0123456789abcdef"


@dataclass(frozen=True)
class TokenPolicy:
    length: int = TOKEN_MIN_LENGTH
    alphabet: str = ALPHANUMERIC
    hex: bool = False  # 64-char hex for high-security contexts

    @classmethod
    def high_security(cls) -> "TokenPolicy":
        return cls(length=64, alphabet=HEX_ALPHABET, hex=True)


def generate_secure_token(
    length: int = TOKEN_MIN_LENGTH,
    alphabet: str = ALPHANUMERIC,
    randbelow: Optional[Callable[[int], int]] = None,
) -> str:
    if length < TOKEN_MIN_LENGTH:
        raise ValueError(f"Token length must be at least {TOKEN_MIN_LENGTH} characters")
    if len(set(alphabet)) < 16:
        raise ValueError("Token alphabet is too small")
    draw = randbelow or secrets.randbelow
    return "".join(alphabet[draw(len(alphabet))] for _ in range(length))


def generate_hex_token(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


def generate(policy: Union[int, TokenPolicy, None] = None, randbelow: Optional[Callable[[int], int]] = None) -> str:
    """Draw one candidate token from a length or a TokenPolicy."""
    if policy is None:
        policy = TokenPolicy()
    elif isinstance(policy, int):
        policy = TokenPolicy(length=policy)
    if policy.hex and randbelow is None:
        return generate_hex_token(max(policy.length, 64) // 2)
    return generate_secure_token(policy.length, policy.alphabet, randbelow=randbelow)


def is_well_formed(value: Optional[str], min_length: int = TOKEN_MIN_LENGTH) -> bool:
    """Cheap format check done before any store lookup."""
    if not value or len(value) < min_length or len(value) > 128:
        return False
    return all(c in ALPHANUMERIC or c in "-_" for c in value)


def mask_token(value: Optional[str]) -> str:
    """Display/log form of a token; never the full value."""
    if not value:
        return "tok_null"
    if len(value) <= 6:
        return "tok_***"
    return f"tok_{value[:3]}***{value[-3:]}"


def days_until(expires_at: Optional[datetime], now: datetime) -> Optional[int]:
    if expires_at is None:
        return None
    return math.ceil((expires_at - now).total_seconds() / 86400)


def portal_url(value: str, base_url: Optional[str] = None) -> str:
    base = (base_url or PORTAL_BASE_URL).rstrip("/")
    return f"{base}/f/{value}"


def qr_code_data(value: str, base_url: Optional[str] = None) -> str:
    return portal_url(value, base_url)


def qr_code_png(value: str, base_url: Optional[str] = None) -> bytes:
    qr = qrcode.QRCode(version=1, box_size=8, border=2)
    qr.add_data(qr_code_data(value, base_url))
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
