from __future__ import annotations

from conftest import make_candidate
from jobforge.config import ProfileTexts
from jobforge.dedup import DedupGate
from jobforge.prompts import BASIC_FILTER_TEMPLATE, DETAILED_ANALYSIS_TEMPLATE, build_variables, render


def test_render_substitutes_known_names():
    assert render("{{job_title}} at {{ company }}", {"job_title": "Engineer", "company": "Acme"}) == "Engineer at Acme"


def test_unknown_placeholder_gets_marker():
    out = render("Hello {{nickname}}!", {"job_title": "x"})
    assert out == "Hello [nickname not provided]!"


def test_empty_value_gets_marker():
    assert render("{{cv}}", {"cv": "   "}) == "[cv not provided]"


def test_text_without_placeholders_is_unchanged():
    assert render("plain {braces} text", {}) == "plain {braces} text"


def test_build_variables_from_job_and_preferences(store, preferences):
    job = DedupGate(store).admit(make_candidate(salary_range="£80k")).job
    variables = build_variables(job, preferences, ProfileTexts(cv="CV text", biography="Bio"))

    assert variables["job_title"] == job.title
    assert variables["target_locations"] == "London, Remote"
    assert variables["remote_preference"] == "remote, hybrid"
    assert (variables["min_salary"], variables["max_salary"]) == ("70000", "90000")
    assert variables["currency"] == "GBP"
    assert variables["salary_range"] == "£80k"
    assert variables["biography"] == "Bio"
    assert variables["cv"] == "CV text"


def test_default_templates_render_without_texts(store, preferences):
    job = DedupGate(store).admit(make_candidate()).job
    variables = build_variables(job, preferences)

    basic = render(BASIC_FILTER_TEMPLATE, variables)
    detailed = render(DETAILED_ANALYSIS_TEMPLATE, variables)

    assert "{{" not in basic and "{{" not in detailed
    assert "[biography not provided]" in basic
    assert "[cv not provided]" in detailed
    assert "Rate this job as: REJECT, MAYBE, or APPROVE" in basic
