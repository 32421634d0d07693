import pytest

from survey_insights.anonymization import RegexAnonymizer
from survey_insights.models import (
    AnalysisOptions,
    AnalysisType,
    JobStatus,
    Priority,
    QuestionnaireResponse,
    is_valid_questionnaire_id,
)


def test_analysis_type_parse_accepts_alias_and_case():
    assert AnalysisType.parse("clusters") is AnalysisType.CLUSTERING
    assert AnalysisType.parse(" Insights ") is AnalysisType.INSIGHTS
    assert AnalysisType.parse(AnalysisType.THEMATIC) is AnalysisType.THEMATIC
    with pytest.raises(ValueError):
        AnalysisType.parse("astrology")


def test_required_field_per_type():
    assert AnalysisType.CLUSTERING.required_field == "clusters"
    assert AnalysisType.THEMATIC.required_field == "themes"


def test_priority_weights_are_ordered():
    weights = [p.weight for p in (Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.URGENT)]
    assert weights == sorted(weights)
    assert Priority.URGENT.weight == 20


def test_terminal_statuses():
    assert JobStatus.CANCELLED.is_terminal
    assert not JobStatus.PROCESSING.is_terminal


@pytest.mark.parametrize("value,valid", [
    ("q-community-2024", True),
    ("3f2b9c1e-8a7d-4e2b-9d3c-1a2b3c4d5e6f", True),
    ("42", True),
    ("", False),
    ("-leading-dash", False),
    ("has space", False),
    ("x" * 129, False),
    (42, False),
])
def test_questionnaire_id_format(value, valid):
    assert is_valid_questionnaire_id(value) is valid


def test_options_from_dict_ignores_unknown_and_null_keys():
    options = AnalysisOptions.from_dict({"language": "pl", "topic": None, "legacy_flag": True})

    assert options.language == "pl"
    assert options.topic is None
    assert options.anonymization_level == "full"
    assert AnalysisOptions.from_dict(None) == AnalysisOptions()


# -----------------------------------------------------------------------------
# anonymization
# -----------------------------------------------------------------------------

@pytest.fixture
def response():
    return QuestionnaireResponse(
        id="r1",
        questionnaire_id="q1",
        answers={
            "contact": "Mail jan.kowalski@example.com or call 555-123-4567",
            "about": "Jan Kowalski lives at 00-950 next to Anna Nowak",
            "pesel": "85010112345",
            "tags": ["garden", "kitchen"],
        },
        respondent={"name": "Jan Kowalski", "age": 7},
    )


def test_partial_level_removes_contact_identifiers_only(response):
    anon = RegexAnonymizer(salt="s").anonymize(response, "partial")

    assert anon.answers["contact"] == "Mail [EMAIL] or call [PHONE]"
    assert anon.answers["pesel"] == "[NATIONAL_ID]"
    assert "Anna Nowak" in anon.answers["about"]
    assert "00-950" in anon.answers["about"]
    assert anon.answers["tags"] == "garden, kitchen"


def test_full_level_also_removes_names_profile_values_and_postal_codes(response):
    anon = RegexAnonymizer(salt="s").anonymize(response, "full")

    about = anon.answers["about"]
    assert "Jan Kowalski" not in about
    assert "[REDACTED]" in about
    assert "[POSTAL_CODE]" in about
    assert "[NAME]" in about
    assert anon.level == "full"
    assert anon.response_id == "r1"


def test_anonymous_ids_are_stable_per_salt(response):
    first = RegexAnonymizer(salt="s").anonymize(response, "full").anonymous_id
    again = RegexAnonymizer(salt="s").anonymize(response, "full").anonymous_id
    other = RegexAnonymizer(salt="t").anonymize(response, "full").anonymous_id

    assert first == again != other
    assert first.startswith("resp_") and len(first) == len("resp_") + 12


def test_unknown_level_is_rejected(response):
    with pytest.raises(ValueError):
        RegexAnonymizer().anonymize(response, "none")


def test_as_text_keeps_anonymous_id_header(response):
    text = RegexAnonymizer(salt="s").anonymize(response, "full").as_text()
    assert text.splitlines()[0].startswith("[resp_")
    assert "contact: Mail [EMAIL]" in text
