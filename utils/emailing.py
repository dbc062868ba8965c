import smtplib
import uuid
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.mime.image import MIMEImage
from typing import Optional
from jinja2 import Environment, FileSystemLoader, select_autoescape
import os

from core.config import APP_NAME, SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASS, MAIL_FROM, TEMPLATES_DIR, logger, utcnow

# Jinja env
_jinja_env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html", "xml"]),
)

EMAIL_BRAND_BUTTON_BG = os.getenv("EMAIL_BRAND_BUTTON_BG", "#2F6FEB")
EMAIL_BRAND_BUTTON_TEXT = os.getenv("EMAIL_BRAND_BUTTON_TEXT", "#FFFFFF")
EMAIL_BRAND_BG = os.getenv("EMAIL_BRAND_BG", "#F4F5F7")
EMAIL_LOGO_URL = os.getenv("EMAIL_LOGO_URL", "")


def smtp_configured() -> bool:
    return bool(SMTP_HOST and MAIL_FROM)


def render_email(template_name: str, **context) -> str:
    base = {
        "app_name": APP_NAME,
        "brand_bg": EMAIL_BRAND_BG,
        "button_bg": EMAIL_BRAND_BUTTON_BG,
        "button_text": EMAIL_BRAND_BUTTON_TEXT,
        "logo_url": EMAIL_LOGO_URL,
    }
    base.update(context or {})
    return _jinja_env.get_template(template_name).render(**base)


def send_email_smtp(
    to_addr: str,
    subject: str,
    html: str,
    text: Optional[str] = None,
    attachments: Optional[list] = None,
) -> bool:
    """Send one message; returns False instead of raising on any SMTP failure."""
    try:
        if not smtp_configured():
            logger.error("SMTP not configured; cannot send email")
            return False
        sender = MAIL_FROM.strip()
        display_from = f"{APP_NAME} <{sender}>" if "<" not in sender else sender
        envelope_from = sender.split("<", 1)[-1].rstrip(">").strip() if "<" in sender else sender

        domain = envelope_from.split("@")[-1] if "@" in envelope_from else "schoolpix.local"
        message_id = f"<{uuid.uuid4()}@{domain}>"

        alt = MIMEMultipart("alternative")
        if not text:
            text = "Open this link in an HTML-capable email client."
        alt.attach(MIMEText(text or "", "plain", _charset="utf-8"))
        alt.attach(MIMEText(html or "", "html", _charset="utf-8"))

        if attachments:
            # Inline images (QR codes on access emails) referenced by cid
            msg = MIMEMultipart("related")
            msg.attach(alt)
            for att in attachments:
                fname = str(att.get("filename") or "attachment.png")
                mime = str(att.get("mime_type") or "image/png").lower()
                sub = mime.split("/", 1)[1] if "/" in mime else "png"
                part = MIMEImage(att.get("content") or b"", _subtype=sub)
                cid = att.get("cid")
                if cid:
                    part.add_header("Content-ID", f"<{cid}>")
                    part.add_header("Content-Disposition", f'inline; filename="{fname}"')
                else:
                    part.add_header("Content-Disposition", f'attachment; filename="{fname}"')
                msg.attach(part)
        else:
            msg = alt

        msg["Subject"] = subject
        msg["From"] = display_from
        msg["To"] = to_addr
        msg["Message-ID"] = message_id
        msg["Date"] = utcnow().strftime("%a, %d %b %Y %H:%M:%S +0000")

        with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as server:
            server.starttls()
            if SMTP_USER or SMTP_PASS:
                server.login(SMTP_USER, SMTP_PASS)
            server.sendmail(envelope_from, [to_addr], msg.as_string())
        return True
    except Exception as ex:
        logger.exception(f"SMTP send failed: {ex}")
        return False
