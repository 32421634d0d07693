import pytest

from survey_insights.prompts import TemplateRegistry, load_content
from survey_insights.quality import (
    QualityValidator,
    RuleResult,
    ValidationRule,
    check_required_sections,
    find_pii,
)


@pytest.fixture
def validator():
    return QualityValidator()


def _packaged_templates():
    for template in TemplateRegistry.with_defaults().all():
        languages = ("en", "pl") if template.language == "both" else (template.language,)
        for language in languages:
            yield template.id, language


@pytest.mark.parametrize("template_id,language", list(_packaged_templates()))
def test_packaged_templates_pass_validation(validator, template_id, language):
    content = load_content(template_id, language)
    report = validator.validate_template(f"{content.system}\n{content.user}", {"language": language})

    assert report.passed, [i.message for i in report.errors]
    assert report.metrics["total_rules"] == 15


def test_required_sections_accepts_either_header_set():
    assert check_required_sections("TASK INSTRUCTIONS FORMAT GUIDELINES", {}).passed
    assert check_required_sections("ZADANIE INSTRUKCJE FORMAT WSKAZÓWKI", {"language": "en"}).passed


def test_required_sections_reports_missing_headers():
    result = check_required_sections("# TASK\n# FORMAT", {"language": "en"})
    assert not result.passed
    assert result.message == "Missing required sections: INSTRUCTIONS, GUIDELINES"


def test_template_without_structure_is_rejected(validator):
    report = validator.validate_template("Summarise {{responses}} nicely. {{bad-name}}")

    assert not report.passed
    failed = {i.rule for i in report.errors}
    assert {"required_sections", "json_structure", "variable_syntax", "gdpr_compliance"} <= failed
    assert 0 <= report.overall_score < 50
    assert "Review template structure and fix critical formatting issues" in report.recommendations
    assert len(report.recommendations) == len(set(report.recommendations))


def test_output_with_email_is_flagged_as_pii(validator):
    output = {"themes": [{"quote": "contact jan.kowalski@example.com"}], "summary": "x"}
    report = validator.validate_output(output)

    assert not report.passed
    pii = [i for i in report.errors if i.rule == "pii_leakage"]
    assert pii and "email" in pii[0].message
    assert "Implement stronger PII detection and redaction" in report.recommendations


def test_find_pii_detects_each_kind():
    text = "id 85010112345, phone 555-123-4567, born 01/02/1985 or 1985-02-01, mail a@b.org"
    assert set(find_pii(text)) == {"national_id", "phone", "date", "email"}


def test_schema_rule_only_runs_with_schema(validator):
    without = validator.validate_output({"themes": []})
    with_schema = validator.validate_output({"themes": []}, schema={"required": ["themes", "summary"]})

    assert without.metrics["total_rules"] == 3
    assert with_schema.metrics["total_rules"] == 4
    assert "output_schema_compliance" in {i.rule for i in with_schema.errors}


def test_minimal_payload_gets_quality_warning_not_error(validator):
    report = validator.validate_output(
        {"themes": [{"name": "parks"}]},
        schema={"required": ["themes"]},
        context={"expected_sections": ["themes"]},
    )
    assert report.passed
    assert [i.rule for i in report.warnings] == ["output_quality"]
    assert report.overall_score == pytest.approx(75.0)


def test_non_object_output_fails(validator):
    report = validator.validate_output(["not", "an", "object"])
    assert not report.passed
    assert {"output_json_structure", "output_quality"} <= {i.rule for i in report.errors}


def test_raising_rule_counts_as_critical_failure():
    def explode(content, context):
        raise RuntimeError("boom")

    validator = QualityValidator(template_rules=[
        ValidationRule("explodes", "Explodes", "always raises", "content", "info", explode),
        ValidationRule("ok", "Ok", "always passes", "content", "info",
                       lambda content, context: RuleResult(True, "fine")),
    ])
    report = validator.validate_template("anything")

    assert not report.passed
    assert report.metrics["critical_failures"] == 1
    assert report.errors[0].rule == "explodes"
    assert report.overall_score == pytest.approx(50.0)


def test_rule_management(validator):
    custom = ValidationRule("no_shouting", "No shouting", "no caps", "content", "warning",
                            lambda content, context: RuleResult(not content.isupper(), "caps"))
    validator.add_rule(custom)
    assert custom in validator.rules_by_category("content")

    assert validator.remove_rule("no_shouting") is True
    assert validator.remove_rule("no_shouting") is False

    with pytest.raises(ValueError):
        validator.add_rule(ValidationRule("x", "x", "x", "style", "warning", custom.check))
    with pytest.raises(ValueError):
        validator.add_rule(ValidationRule("x", "x", "x", "content", "fatal", custom.check))
