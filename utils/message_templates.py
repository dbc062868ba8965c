"""
Message rendering for token distribution.

Built-in templates are Jinja2 files under templates/messages/. Admin-defined
templates use a small block syntax:

    {{family_name}}
    {{#if custom_message}}...{{else}}...{{/if}}
    {{#each students}}{{this.name}} or {{name}}{{else}}...{{/each}}

which is translated once into Jinja2 and compiled in a sandbox with
StrictUndefined, so a typo fails loudly instead of rendering an empty string.
"""
import os
import re
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, select_autoescape
from jinja2.sandbox import SandboxedEnvironment

from core.config import APP_NAME, TEMPLATES_DIR, logger
from utils.emailing import render_email

CHANNELS = ("email", "whatsapp", "sms", "print", "direct")

# Content-ID of the inline QR image attached to access emails
QR_CID = "gallery-qr"

BUILTIN_TEMPLATES = {
    "family_access": {
        "name": "Family gallery access",
        "subject": "Your photos from {{event_name}} are ready",
        "button_label": "View your photos",
    },
    "token_expiry_warning": {
        "name": "Access link expiring",
        "subject": "Your gallery link for {{event_name}} expires in {{expires_in_days}} days",
        "button_label": "Open your gallery",
    },
}


class TemplateRenderError(ValueError):
    pass


@dataclass
class MessageContext:
    family_name: str = "Family"
    event_name: str = ""
    school_name: Optional[str] = None
    students: List[Dict[str, Any]] = field(default_factory=list)
    multiple_students: bool = False
    portal_url: str = ""
    qr_code_data: Optional[str] = None
    expires_in_days: Optional[int] = None
    custom_message: Optional[str] = None
    photographer_contact: Optional[str] = None
    new_access_link: Optional[str] = None
    new_expiry_days: Optional[int] = None

    def as_vars(self) -> Dict[str, Any]:
        data = asdict(self)
        data["app_name"] = APP_NAME
        return data


@dataclass
class RenderedMessage:
    subject: str
    body: str
    text: str

    def to_dict(self):
        return {"subject": self.subject, "body": self.body, "text": self.text}


_files_env = Environment(
    loader=FileSystemLoader(os.path.join(TEMPLATES_DIR, "messages")),
    autoescape=select_autoescape(["html", "xml"]),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)
_html_sandbox = SandboxedEnvironment(autoescape=True, undefined=StrictUndefined)
_text_sandbox = SandboxedEnvironment(autoescape=False, undefined=StrictUndefined)

_TAG_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}", re.S)
_PATH_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
_JINJA_MARKERS = ("{%", "%}", "{#", "#}", "{{", "}}")


def _literal(text: str) -> str:
    if not text:
        return ""
    if any(m in text for m in _JINJA_MARKERS):
        return "{{ " + repr(text) + "|safe }}"
    return text


def _path(expr: str, in_each: bool) -> str:
    if not _PATH_RE.match(expr):
        raise TemplateRenderError(f"Malformed placeholder: {{{{{expr}}}}}")
    if not in_each or expr == "this" or expr.startswith("this."):
        return expr
    # Bare names inside a loop resolve against the current item first
    head = expr.split(".", 1)[0]
    return f"(this.{expr} if this.{head} is defined else {expr})"


def translate_block_syntax(source: str) -> str:
    """Translate {{#if}}/{{#each}} block syntax into Jinja2 source."""
    out: List[str] = []
    stack: List[str] = []
    pos = 0
    for m in _TAG_RE.finditer(source or ""):
        out.append(_literal(source[pos:m.start()]))
        pos = m.end()
        tag = m.group(1)
        in_each = "each" in stack
        if tag.startswith("#if "):
            out.append("{% if " + _path(tag[4:].strip(), in_each) + " %}")
            stack.append("if")
        elif tag.startswith("#each "):
            out.append("{% for this in " + _path(tag[6:].strip(), in_each) + " %}")
            stack.append("each")
        elif tag == "else":
            if not stack or stack[-1] not in ("if", "each"):
                raise TemplateRenderError("{{else}} outside of {{#if}} or {{#each}}")
            # The else branch of an each runs when the list is empty; it has no current item
            if stack[-1] == "each":
                stack[-1] = "each-else"
            out.append("{% else %}")
        elif tag in ("/if", "/each"):
            kind = tag[1:]
            if not stack or stack[-1].split("-")[0] != kind:
                raise TemplateRenderError(f"Unbalanced {{{{{tag}}}}}")
            stack.pop()
            out.append("{% endif %}" if kind == "if" else "{% endfor %}")
        else:
            out.append("{{ " + _path(tag, in_each) + " }}")
    out.append(_literal((source or "")[pos:]))
    if stack:
        raise TemplateRenderError(f"Unclosed {{{{#{stack[-1].split('-')[0]}}}}} block")
    return "".join(out)


@lru_cache(maxsize=256)
def compile_block_template(source: str, html: bool = False):
    try:
        env = _html_sandbox if html else _text_sandbox
        return env.from_string(translate_block_syntax(source))
    except TemplateError as ex:
        raise TemplateRenderError(f"Invalid template: {ex}") from ex


def render_block_template(source: str, variables: Dict[str, Any], html: bool = False) -> str:
    template = compile_block_template(source, html)
    try:
        return template.render(**variables)
    except TemplateError as ex:
        raise TemplateRenderError(str(ex)) from ex


def _file_channel(channel: str) -> str:
    return "sms" if channel in ("sms", "print", "direct") else channel


def _render_builtin(template_id: str, channel: str, ctx: MessageContext) -> RenderedMessage:
    meta = BUILTIN_TEMPLATES[template_id]
    variables = ctx.as_vars()
    subject = render_block_template(meta["subject"], variables)
    try:
        text = _files_env.get_template(f"{template_id}.whatsapp.txt").render(**variables).strip()
        if channel == "email":
            inner = _files_env.get_template(f"{template_id}.email.html").render(**variables)
            link = ctx.new_access_link or ctx.portal_url
            body = render_email(
                "email_basic.html",
                title=subject,
                intro=inner,
                button_label=meta["button_label"] if link else "",
                button_url=link,
                qr_cid=QR_CID if link else "",
                footer_note="This link is private to your family. Please don't share it.",
            )
            return RenderedMessage(subject=subject, body=body, text=text)
        body = _files_env.get_template(f"{template_id}.{_file_channel(channel)}.txt").render(**variables).strip()
    except TemplateError as ex:
        raise TemplateRenderError(str(ex)) from ex
    return RenderedMessage(subject=subject, body=body, text=body)


def render_message(template_id: str, channel: str, context: MessageContext, store=None) -> RenderedMessage:
    if channel not in CHANNELS:
        raise TemplateRenderError(f"Unknown channel '{channel}'")
    if template_id in BUILTIN_TEMPLATES:
        return _render_builtin(template_id, channel, context)

    template = store.get_template(template_id) if store is not None else None
    if template is None or not template.is_active:
        raise TemplateRenderError(f"Template not found: {template_id}")
    variables = context.as_vars()
    html = channel == "email"
    body = render_block_template(template.content or "", variables, html=html)
    subject = render_block_template(template.subject or "", variables) if template.subject else ""
    if not subject:
        subject = render_block_template("{{event_name}}", variables)
    if html:
        text = re.sub(r"<[^>]+>", "", body).strip()
        body = render_email(
            "email_basic.html",
            title=subject,
            intro=body,
            button_label="View your photos" if context.portal_url else "",
            button_url=context.new_access_link or context.portal_url,
            qr_cid=QR_CID if (context.new_access_link or context.portal_url) else "",
            footer_note="",
        )
        logger.debug(f"[distribution] rendered custom template {template_id} for email")
        return RenderedMessage(subject=subject, body=body, text=text)
    return RenderedMessage(subject=subject, body=body, text=body)


def list_builtin_templates() -> List[Dict[str, Any]]:
    return [
        {"id": tid, "name": meta["name"], "method": "any", "builtin": True, "subject": meta["subject"]}
        for tid, meta in BUILTIN_TEMPLATES.items()
    ]
