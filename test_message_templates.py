"""
Tests for message rendering: built-in templates per channel and the
{{#if}}/{{#each}} block syntax of admin templates.
"""
import pytest

from models.access_token import DistributionTemplate
from utils.message_templates import (
    MessageContext,
    TemplateRenderError,
    render_block_template,
    render_message,
    translate_block_syntax,
)


def _ctx(**overrides):
    base = dict(
        family_name="Jones",
        event_name="Spring Portraits",
        school_name="Maple Grove Elementary",
        students=[{"name": "Ava Jones"}, {"name": "Ben Jones"}],
        multiple_students=True,
        portal_url="https://portal.schoolpix.test/f/ABC123DEF456GHI789JKL",
        expires_in_days=30,
    )
    base.update(overrides)
    return MessageContext(**base)


class _Templates:
    def __init__(self, *templates):
        self._by_id = {t.id: t for t in templates}

    def get_template(self, template_id):
        return self._by_id.get(template_id)


# --- BLOCK SYNTAX ---

def test_variables_and_conditionals():
    src = "Hi {{family_name}}!{{#if custom_message}} Note: {{custom_message}}{{else}} No note.{{/if}}"
    assert render_block_template(src, {"family_name": "Jones", "custom_message": None}) == "Hi Jones! No note."
    assert render_block_template(src, {"family_name": "Jones", "custom_message": "Retakes Friday"}) == \
        "Hi Jones! Note: Retakes Friday"


def test_each_supports_this_and_bare_fields():
    src = "{{#each students}}[{{this.name}}|{{name}}]{{/each}}"
    out = render_block_template(src, {"students": [{"name": "Ava"}, {"name": "Ben"}]})
    assert out == "[Ava|Ava][Ben|Ben]"


def test_bare_name_inside_each_falls_back_to_outer_scope():
    src = "{{#each students}}{{name}} at {{event_name}};{{/each}}"
    out = render_block_template(src, {"students": [{"name": "Ava"}], "event_name": "Spring"})
    assert out == "Ava at Spring;"


def test_each_else_renders_for_empty_lists():
    src = "{{#each students}}{{name}};{{else}}No students yet for {{event_name}}{{/each}}"
    assert render_block_template(src, {"students": [{"name": "Ava"}], "event_name": "Spring"}) == "Ava;"
    assert render_block_template(src, {"students": [], "event_name": "Spring"}) == "No students yet for Spring"


def test_unknown_variable_fails_loudly():
    with pytest.raises(TemplateRenderError):
        render_block_template("Hi {{famly_name}}", {"family_name": "Jones"})


@pytest.mark.parametrize("src", [
    "{{#if x}}unclosed",
    "{{#each xs}}{{/if}}",
    "{{/each}}",
    "{{else}}",
    "{{#each xs}}a{{else}}b{{else}}c{{/each}}",
    "{{ family_name | upper }}",
    "{{ 7 * 7 }}",
])
def test_malformed_templates_rejected(src):
    with pytest.raises(TemplateRenderError):
        translate_block_syntax(src)


def test_jinja_syntax_in_literal_text_is_not_executed():
    src = "{% for x in range(3) %}boom{% endfor %} {{family_name}}"
    assert render_block_template(src, {"family_name": "Jones"}) == \
        "{% for x in range(3) %}boom{% endfor %} Jones"


def test_html_templates_escape_values():
    out = render_block_template("<p>{{family_name}}</p>", {"family_name": "<script>x</script>"}, html=True)
    assert "<script>" not in out
    assert "&lt;script&gt;" in out


# --- BUILT-IN TEMPLATES ---

def test_family_access_email():
    msg = render_message("family_access", "email", _ctx())
    assert msg.subject == "Your photos from Spring Portraits are ready"
    assert "Ava Jones" in msg.body and "Ben Jones" in msg.body
    assert "https://portal.schoolpix.test/f/ABC123DEF456GHI789JKL" in msg.body
    assert "children" in msg.body
    assert "https://portal.schoolpix.test/f/ABC123DEF456GHI789JKL" in msg.text
    assert 'src="cid:gallery-qr"' in msg.body


def test_family_access_single_student_wording():
    msg = render_message("family_access", "whatsapp", _ctx(students=[{"name": "Ava Jones"}], multiple_students=False))
    assert "Your child's photos" in msg.body
    assert "- Ava Jones" in msg.body


def test_family_access_sms_is_short():
    msg = render_message("family_access", "sms", _ctx())
    assert msg.body.startswith("Spring Portraits photos are ready")
    assert "(valid 30 days)" in msg.body
    assert "\n" not in msg.body


def test_expiry_warning_with_new_link():
    ctx = _ctx(expires_in_days=1, new_access_link="https://portal.schoolpix.test/f/NEWLINK", new_expiry_days=30)
    msg = render_message("token_expiry_warning", "sms", ctx)
    assert "expires in 1 days" in msg.body
    assert "New link: https://portal.schoolpix.test/f/NEWLINK" in msg.body


def test_print_and_direct_use_short_form():
    assert render_message("family_access", "print", _ctx()).body == render_message("family_access", "sms", _ctx()).body


def test_unknown_channel():
    with pytest.raises(TemplateRenderError):
        render_message("family_access", "fax", _ctx())


# --- CUSTOM TEMPLATES ---

def test_custom_template_from_store():
    tpl = DistributionTemplate(
        id="retakes",
        name="Retake day",
        method="sms",
        subject="{{event_name}} retakes",
        content="{{family_name}}: {{#each students}}{{name}} {{/each}}-> {{portal_url}}",
        is_active=True,
    )
    msg = render_message("retakes", "sms", _ctx(), store=_Templates(tpl))
    assert msg.subject == "Spring Portraits retakes"
    assert msg.body == "Jones: Ava Jones Ben Jones -> https://portal.schoolpix.test/f/ABC123DEF456GHI789JKL"


def test_inactive_or_missing_custom_template():
    tpl = DistributionTemplate(id="old", name="Old", method="sms", content="x", is_active=False)
    with pytest.raises(TemplateRenderError):
        render_message("old", "sms", _ctx(), store=_Templates(tpl))
    with pytest.raises(TemplateRenderError):
        render_message("nope", "sms", _ctx(), store=_Templates())
