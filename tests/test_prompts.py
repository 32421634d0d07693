from unittest.mock import MagicMock

import pytest

from survey_insights.error_handling import TemplateNotFoundError
from survey_insights.prompts import (
    RenderCache,
    TemplatePerformance,
    TemplateRegistry,
    TemplateRenderer,
    TemplateVersion,
    estimate_tokens,
    load_content,
    render_text,
    select_optimal,
    update_metrics,
)


def _template(template_id, category="thematic", language="en", confidence=0.8, success=0.9, active=True):
    return TemplateVersion(
        id=template_id,
        version="1.0",
        name=template_id,
        description="test template",
        language=language,
        category=category,
        is_active=active,
        performance=TemplatePerformance(confidence, 1000, 0, success),
    )


# -----------------------------------------------------------------------------
# render_text
# -----------------------------------------------------------------------------

def test_render_text_substitutes_and_blanks_missing_values():
    out = render_text("Hello {{name}}, topic: {{topic}}.", {"name": "Ada", "topic": None})
    assert out == "Hello Ada, topic: ."


def test_render_text_conditionals_follow_truthiness():
    text = "{{#if include_sentiment}}with sentiment{{/if}}|{{#if topic}}on {{topic}}{{/if}}"
    assert render_text(text, {"include_sentiment": True, "topic": ""}) == "with sentiment|"
    assert render_text(text, {"include_sentiment": False, "topic": "parks"}) == "|on parks"


def test_render_text_each_binds_item_and_index():
    out = render_text("{{#each items}}{{@index}}: {{this}}{{/each}}", {"items": ["a", "b"]})
    assert out == "0: a\n1: b"


def test_render_text_does_not_rescan_substituted_values():
    out = render_text("{{responses}}", {"responses": "say {{secret}}", "secret": "leaked"})
    assert out == "say {{secret}}"


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcde") == 2


# -----------------------------------------------------------------------------
# loader
# -----------------------------------------------------------------------------

def test_load_content_falls_back_to_english():
    content = load_content("thematic_analysis_v2_en", "pl")
    assert content.language == "en"
    assert "# TASK" in content.user


def test_load_content_unknown_template():
    with pytest.raises(TemplateNotFoundError):
        load_content("no_such_template", "en")


# -----------------------------------------------------------------------------
# renderer + cache
# -----------------------------------------------------------------------------

def test_second_render_is_served_from_cache_without_loading():
    registry = TemplateRegistry.with_defaults()
    loader = MagicMock(wraps=load_content)
    renderer = TemplateRenderer(registry, RenderCache(), loader=loader)
    context = {"language": "en", "questionnaire_type": "community", "response_count": 3}
    variables = {"responses": "[resp_1]\nq1: more benches", "min_theme_frequency": 2}

    first = renderer.render("thematic_analysis_v2_en", context, variables)
    second = renderer.render("thematic_analysis_v2_en", dict(context), dict(variables))

    assert first == second
    assert loader.call_count == 1
    assert renderer.cache.stats() == {"size": 1, "hits": 1, "misses": 1}


def test_different_inputs_miss_the_cache():
    registry = TemplateRegistry.with_defaults()
    loader = MagicMock(wraps=load_content)
    renderer = TemplateRenderer(registry, loader=loader)

    renderer.render("hierarchical_clustering_v2", {"language": "en"}, {"responses": "a"})
    renderer.render("hierarchical_clustering_v2", {"language": "en"}, {"responses": "b"})

    assert loader.call_count == 2
    assert len(renderer.cache) == 2


def test_render_uses_context_language_and_fills_placeholders():
    renderer = TemplateRenderer(TemplateRegistry.with_defaults())
    prompt = renderer.render(
        "hierarchical_clustering_v2",
        {"language": "pl", "questionnaire_type": "community", "response_count": 7, "topic": None},
        {"responses": "[resp_x]\nq1: ogród", "min_cluster_size": 4},
    )
    assert prompt.language == "pl"
    assert "# ZADANIE" in prompt.user
    assert "[resp_x]" in prompt.user
    assert "{{" not in prompt.user
    assert prompt.template_version == "2.0"
    assert prompt.token_estimate > 0


def test_custom_variables_override_context_and_variables():
    registry = TemplateRegistry([_template("t1")])
    loader = MagicMock()
    loader.return_value = MagicMock(language="en", system="sys", user="{{questionnaire_type}}")
    renderer = TemplateRenderer(registry, loader=loader)

    prompt = renderer.render(
        "t1",
        {"questionnaire_type": "context"},
        {"questionnaire_type": "variables"},
        {"custom_variables": {"questionnaire_type": "custom"}},
    )
    assert prompt.user == "custom"
    loader.assert_called_once_with("t1", "en")


def test_render_unknown_template_raises():
    renderer = TemplateRenderer(TemplateRegistry())
    with pytest.raises(TemplateNotFoundError):
        renderer.render("missing", {"language": "en"})


def test_cache_clear_resets_counters():
    cache = RenderCache()
    cache.get("nope")
    cache.clear()
    assert cache.stats() == {"size": 0, "hits": 0, "misses": 0}


# -----------------------------------------------------------------------------
# selector
# -----------------------------------------------------------------------------

def test_select_optimal_prefers_highest_score():
    registry = TemplateRegistry([
        _template("a_low", confidence=0.7, success=0.9),
        _template("b_high", confidence=0.9, success=0.9),
    ])
    assert select_optimal(registry, "thematic", "en").id == "b_high"


def test_select_optimal_tie_breaks_by_id():
    registry = TemplateRegistry([_template("zeta"), _template("alpha")])
    assert select_optimal(registry, "thematic", "en").id == "alpha"


def test_select_optimal_filters_language_category_and_active():
    registry = TemplateRegistry([
        _template("pl_only", language="pl", confidence=1.0, success=1.0),
        _template("inactive", confidence=1.0, success=1.0, active=False),
        _template("other_category", category="insights", confidence=1.0, success=1.0),
        _template("both_lang", language="both", confidence=0.5, success=0.5),
    ])
    assert select_optimal(registry, "thematic", "en").id == "both_lang"
    assert select_optimal(registry, "clustering", "en") is None


def test_default_registry_covers_every_category_in_both_languages():
    registry = TemplateRegistry.with_defaults()
    for category in ("thematic", "clustering", "contradictions", "insights", "recommendations"):
        for language in ("en", "pl"):
            assert select_optimal(registry, category, language) is not None
    assert select_optimal(registry, "thematic", "pl").id == "thematic_analysis_v2_pl"


def test_default_registry_has_no_template_for_unknown_category_or_language():
    registry = TemplateRegistry.with_defaults()
    assert select_optimal(registry, "sentiment", "en") is None
    assert select_optimal(registry, "thematic", "de") is None


def test_deactivated_template_is_not_selected():
    registry = TemplateRegistry.with_defaults()
    assert registry.deactivate("hierarchical_clustering_v2")
    assert select_optimal(registry, "clustering", "en") is None


# -----------------------------------------------------------------------------
# feedback + reports
# -----------------------------------------------------------------------------

def test_update_metrics_folds_running_averages():
    registry = TemplateRegistry([_template("t1", confidence=0.0, success=0.0)])

    update_metrics(registry, "t1", confidence=0.8, processing_time_ms=100, success=True)
    perf = update_metrics(registry, "t1", confidence=0.4, processing_time_ms=300, success=False)

    assert perf.usage_count == 2
    assert perf.avg_confidence == pytest.approx(0.6)
    assert perf.avg_processing_time == pytest.approx(200)
    assert perf.success_rate == pytest.approx(0.5)
    assert registry.get("t1").performance == perf


def test_update_metrics_unknown_template_is_noop():
    registry = TemplateRegistry([_template("t1")])
    assert update_metrics(registry, "ghost", confidence=1, processing_time_ms=1, success=True) is None
    assert registry.get("t1").performance.usage_count == 0


def test_performance_report_recommends_on_thresholds():
    registry = TemplateRegistry([_template("t1", confidence=0.5, success=0.5)])
    report = registry.performance_report()

    assert report["total_templates"] == 1
    assert report["active_templates"] == 1
    assert report["top_performers"][0]["id"] == "t1"
    assert report["category_performance"]["thematic"]["avg_confidence"] == pytest.approx(0.5)
    assert len(report["recommendations"]) == 3


def test_export_configuration_lists_all_templates():
    import json

    exported = json.loads(TemplateRegistry.with_defaults().export_configuration())
    assert len(exported["templates"]) == 6
    assert exported["metadata"]["version"] == "2.0"
