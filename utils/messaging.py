"""Twilio SMS and WhatsApp delivery."""
from typing import Optional

import httpx

from core.config import (
    logger,
    TWILIO_ACCOUNT_SID,
    TWILIO_AUTH_TOKEN,
    TWILIO_PHONE_NUMBER,
    TWILIO_WHATSAPP_NUMBER,
)


def sms_configured() -> bool:
    return bool(TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER)


def whatsapp_configured() -> bool:
    return bool(TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_WHATSAPP_NUMBER)


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """E.164-ish cleanup; bare 10-digit numbers are treated as US."""
    phone_clean = "".join(c for c in (phone or "") if c.isdigit() or c == "+")
    if not phone_clean:
        return None
    if not phone_clean.startswith("+"):
        if len(phone_clean) == 10:
            phone_clean = "+1" + phone_clean
        elif len(phone_clean) == 11 and phone_clean.startswith("1"):
            phone_clean = "+" + phone_clean
        else:
            phone_clean = "+" + phone_clean
    digits = phone_clean[1:]
    if len(digits) < 8 or len(digits) > 15 or not digits.isdigit():
        return None
    return phone_clean


def looks_like_phone(value: Optional[str]) -> bool:
    return bool(value) and "@" not in value and normalize_phone(value) is not None


def _send_twilio_message(to_addr: str, from_addr: str, body: str) -> dict:
    url = f"https://api.twilio.com/2010-04-01/Accounts/{TWILIO_ACCOUNT_SID}/Messages.json"
    data = {
        "To": to_addr,
        "From": from_addr,
        "Body": body,
    }
    try:
        with httpx.Client(timeout=30.0) as client:
            resp = client.post(url, data=data, auth=(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN))
            result = resp.json()
            if resp.status_code in (200, 201):
                return {"ok": True, "sid": result.get("sid")}
            return {"ok": False, "error": result.get("message") or str(result)}
    except Exception as ex:
        logger.error(f"Twilio send error: {ex}")
        return {"ok": False, "error": str(ex)}


def send_sms(to_phone: str, body: str) -> dict:
    if not sms_configured():
        return {"ok": False, "error": "Twilio not configured"}
    phone = normalize_phone(to_phone)
    if not phone:
        return {"ok": False, "error": "Invalid phone number"}
    return _send_twilio_message(phone, TWILIO_PHONE_NUMBER, body)


def send_whatsapp(to_phone: str, body: str) -> dict:
    if not whatsapp_configured():
        return {"ok": False, "error": "Twilio WhatsApp not configured"}
    phone = normalize_phone(to_phone)
    if not phone:
        return {"ok": False, "error": "Invalid phone number"}
    sender = TWILIO_WHATSAPP_NUMBER
    if not sender.startswith("whatsapp:"):
        sender = f"whatsapp:{sender}"
    return _send_twilio_message(f"whatsapp:{phone}", sender, body)
