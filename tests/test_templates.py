# tests/test_templates.py
import pytest

from blueprint import templates as tpl
from blueprint.templates import TemplateError, render


def test_scalar_and_dotted_lookup():
    out = render("{{name}} by {{owner.name}}", {"name": "TaskFlow", "owner": {"name": "Ada"}})
    assert out == "TaskFlow by Ada"


def test_missing_values_render_empty():
    assert render("[{{missing}}]", {}) == "[]"
    assert render("[{{flag}}]", {"flag": False}) == "[]"


def test_section_repeats_over_primitives_and_records():
    assert render("{{#items}}<{{.}}>{{/items}}", {"items": ["a", "b"]}) == "<a><b>"
    records = [{"k": "x", "v": 1}, {"k": "y", "v": 2}]
    assert render("{{#rows}}{{k}}={{v}};{{/rows}}", {"rows": records}) == "x=1;y=2;"


def test_section_falls_back_to_outer_context():
    ctx = {"project": "TaskFlow", "mods": [{"name": "auth"}, {"name": "api"}]}
    assert render("{{#mods}}{{project}}/{{name}} {{/mods}}", ctx) == "TaskFlow/auth TaskFlow/api "


def test_inverted_section_renders_on_empty():
    template = "{{#deps}}- {{.}}\n{{/deps}}{{^deps}}- None\n{{/deps}}"
    assert render(template, {"deps": []}) == "- None\n"
    assert render(template, {"deps": ["auth"]}) == "- auth\n"


def test_standalone_section_lines_leave_no_blank_lines():
    template = "Start\n{{#items}}\n- {{.}}\n{{/items}}\nEnd\n"
    assert render(template, {"items": ["a", "b"]}) == "Start\n- a\n- b\nEnd\n"


def test_truthy_scalar_section_renders_once():
    template = "{{#note}}> {{note}}{{/note}}"
    assert render(template, {"note": "stub"}) == "> stub"
    assert render(template, {"note": ""}) == ""


@pytest.mark.parametrize("bad", ["{{#a}}open", "{{/a}}", "{{#a}}{{/b}}"])
def test_mismatched_sections_raise(bad):
    with pytest.raises(TemplateError):
        tpl.parse(bad)


def test_render_is_deterministic():
    ctx = {"name": "X", "summary": "Y", "ai_content": "Z", "tech_stack": [], "modules": [],
           "env_vars": [], "module_tree": "t", "slug": "x"}
    assert render(tpl.README_TEMPLATE, ctx) == render(tpl.README_TEMPLATE, dict(ctx))
