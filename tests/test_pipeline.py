from unittest.mock import MagicMock

import pytest

from fakes import QUESTIONNAIRE_ID, ScriptedInvoker, payload_for
from survey_insights.error_handling import FatalJobError, LLMError
from survey_insights.job_queue import build_job
from survey_insights.models import AnalysisType, JobStatus
from survey_insights.pipeline import compute_progress, confidence_score


def _claimed_job(store, types, **options):
    job = build_job(QUESTIONNAIRE_ID, types, options=options or None)
    store.insert(job)
    return store.claim(job.id)


def test_compute_progress_rounds_half_up():
    assert [compute_progress(i, 3) for i in range(3)] == [33, 67, 100]
    assert compute_progress(0, 8) == 13
    assert compute_progress(0, 1) == 100


def test_confidence_score_components():
    assert confidence_score({}, 5) == 0.5
    assert confidence_score({"themes": [1]}, 20) == pytest.approx(0.7)
    assert confidence_score({"themes": [1], "insights": []}, 50) == pytest.approx(0.8)
    full = {k: [1] for k in ("themes", "clusters", "contradictions", "insights", "recommendations")}
    assert confidence_score(full, 100) == 1.0


def test_contradictions_do_not_raise_confidence():
    assert confidence_score({"contradictions": [{"id": "c1"}]}, 5) == 0.5
    assert confidence_score({"contradictions": [1], "insights": [1]}, 5) == pytest.approx(0.6)


def test_one_failing_type_does_not_abort_the_job(make_runtime, store):
    invoker = ScriptedInvoker(payload_for(AnalysisType.THEMATIC), "this is not json")
    runtime = make_runtime(invoker)
    job = _claimed_job(store, ["thematic", "insights"])

    summary = runtime.pipeline.run(job)

    stored = store.get(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.progress == 100
    assert summary["status"] == "completed"
    assert [a["type"] for a in summary["analyses"]] == ["thematic"]
    [error] = summary["errors"]
    assert error["type"] == "insights"
    assert error["retryable"] is False
    assert "not valid JSON" in error["error"]
    assert summary["statistics"]["total_responses"] == 3
    assert summary["statistics"]["anonymized_responses"] == 3

    results = store.list_results(job.id)
    assert [r.analysis_type for r in results] == [AnalysisType.THEMATIC, AnalysisType.INSIGHTS]
    assert results[0].succeeded and not results[1].succeeded
    meta = results[0].metadata
    assert meta["template_id"] == "thematic_analysis_v2_en"
    assert meta["template_version"] == "2.0"
    assert meta["tokens_used"] == 42
    assert meta["model"] == "test-model"
    assert meta["response_count"] == 3
    assert meta["confidence_score"] == pytest.approx(0.6)


def test_all_types_failing_still_completes_the_job(make_runtime, store):
    invoker = ScriptedInvoker(default=LLMError("rate limit exceeded: slow down"))
    runtime = make_runtime(invoker)
    job = _claimed_job(store, ["thematic", "clustering"])

    summary = runtime.pipeline.run(job)

    assert store.get(job.id).status == JobStatus.COMPLETED
    assert summary["status"] == "failed"
    assert summary["analyses"] == []
    assert [e["retryable"] for e in summary["errors"]] == [True, True]


def test_missing_required_field_fails_that_type(make_runtime, store):
    invoker = ScriptedInvoker('{"summary": "no themes here"}')
    runtime = make_runtime(invoker)
    job = _claimed_job(store, ["thematic"])

    summary = runtime.pipeline.run(job)

    assert "missing required fields: themes" in summary["errors"][0]["error"]


def test_null_required_field_fails_that_type(make_runtime, store):
    runtime = make_runtime(ScriptedInvoker('{"themes": null, "summary": "x"}'))
    job = _claimed_job(store, ["thematic"])

    summary = runtime.pipeline.run(job)

    assert summary["analyses"] == []
    assert "missing required fields: themes" in summary["errors"][0]["error"]
    assert not store.list_results(job.id)[0].succeeded


def test_type_without_template_fails_and_job_completes(make_runtime, store):
    invoker = ScriptedInvoker(payload_for(AnalysisType.INSIGHTS))
    runtime = make_runtime(invoker)
    runtime.registry.deactivate("hierarchical_clustering_v2")
    job = _claimed_job(store, ["clustering", "insights"])

    summary = runtime.pipeline.run(job)

    assert store.get(job.id).status == JobStatus.COMPLETED
    assert [a["type"] for a in summary["analyses"]] == ["insights"]
    [error] = summary["errors"]
    assert error["type"] == "clustering"
    assert error["error"] == "No active template for clustering (en)"
    assert error["retryable"] is False
    failed = store.list_results(job.id)[0]
    assert failed.metadata["template_id"] is None
    assert len(invoker.calls) == 1
    assert runtime.registry.get("hierarchical_clustering_v2").performance.usage_count == 0


def test_pii_in_output_rejects_the_type(make_runtime, store):
    leaked = payload_for(AnalysisType.THEMATIC, quote="reach me at jan.kowalski@example.com")
    runtime = make_runtime(ScriptedInvoker(leaked))
    job = _claimed_job(store, ["thematic"])

    summary = runtime.pipeline.run(job)

    assert summary["analyses"] == []
    assert "quality gate" in summary["errors"][0]["error"]


def test_missing_questionnaire_is_fatal(make_runtime, store):
    runtime = make_runtime()
    job = build_job("q-unknown", ["thematic"])
    store.insert(job)
    job = store.claim(job.id)

    with pytest.raises(FatalJobError):
        runtime.pipeline.run(job)


def test_questionnaire_without_responses_is_fatal(make_runtime, store):
    runtime = make_runtime()
    job = build_job("q-empty", ["thematic"])
    store.insert(job)

    with pytest.raises(FatalJobError, match="No responses"):
        runtime.pipeline.run(store.claim(job.id))


def test_raw_personal_data_never_reaches_the_model(make_runtime, store):
    invoker = ScriptedInvoker(default=payload_for(AnalysisType.THEMATIC))
    runtime = make_runtime(invoker)
    job = _claimed_job(store, ["thematic"])

    runtime.pipeline.run(job)

    prompt = invoker.calls[0]["user"]
    assert "jan.kowalski@example.com" not in prompt
    assert "555-123-4567" not in prompt
    assert "Jan Kowalski" not in prompt
    assert "[EMAIL]" in prompt
    assert "shared garden" in prompt


def test_progress_is_monotonic_and_reaches_100_only_on_completion(make_runtime, store):
    invoker = ScriptedInvoker(
        payload_for(AnalysisType.THEMATIC),
        payload_for(AnalysisType.CLUSTERING),
        payload_for(AnalysisType.RECOMMENDATIONS),
    )
    runtime = make_runtime(invoker)
    job = _claimed_job(store, ["thematic", "clustering", "recommendations"])

    seen = []
    original = store.update_progress

    def spy(job_id, progress):
        ok = original(job_id, progress)
        seen.append((progress, store.get(job_id).progress, store.get(job_id).status))
        return ok

    store.update_progress = spy
    runtime.pipeline.run(job)

    assert [s[0] for s in seen] == [33, 67]
    assert all(status == JobStatus.PROCESSING for _, _, status in seen)
    assert store.get(job.id).progress == 100


def test_custom_prompt_replaces_user_prompt(make_runtime, store):
    invoker = ScriptedInvoker(payload_for(AnalysisType.THEMATIC))
    runtime = make_runtime(invoker)
    job = _claimed_job(store, ["thematic"], custom_prompt="Focus on {{topic}} only.", topic="gardens")

    runtime.pipeline.run(job)

    user = invoker.calls[0]["user"]
    assert user.startswith("Focus on gardens only.")
    assert "# TASK" not in user
    assert "[EMAIL]" in user


def test_polish_job_uses_polish_template(make_runtime, store):
    invoker = ScriptedInvoker(payload_for(AnalysisType.THEMATIC))
    runtime = make_runtime(invoker)
    job = _claimed_job(store, ["thematic"], language="pl")

    runtime.pipeline.run(job)

    assert "# ZADANIE" in invoker.calls[0]["user"]
    assert store.list_results(job.id)[0].metadata["template_id"] == "thematic_analysis_v2_pl"


def test_feedback_updates_selected_template(make_runtime, store):
    invoker = ScriptedInvoker(payload_for(AnalysisType.THEMATIC), "garbage")
    runtime = make_runtime(invoker)
    job = _claimed_job(store, ["thematic", "insights"])

    runtime.pipeline.run(job)

    thematic = runtime.registry.get("thematic_analysis_v2_en").performance
    insights = runtime.registry.get("insights_generation_v2").performance
    assert thematic.usage_count == 1
    assert thematic.success_rate == 1.0
    assert insights.usage_count == 1
    assert insights.success_rate == 0.0
    assert insights.avg_confidence == 0.0


def test_embedding_failures_are_best_effort(make_runtime, store):
    embeddings = MagicMock()
    embeddings.store_embedding.side_effect = RuntimeError("vector store down")
    runtime = make_runtime(ScriptedInvoker(payload_for(AnalysisType.THEMATIC)), embedding_store=embeddings)
    job = _claimed_job(store, ["thematic"])

    summary = runtime.pipeline.run(job)
    runtime.pipeline.close(wait=True)

    assert summary["status"] == "completed"
    # r1: 1 answer, r2: 1 answer, r3: 2 answers
    assert embeddings.store_embedding.call_count == 4
    response_id, question_id, text, model = embeddings.store_embedding.call_args_list[0].args
    assert response_id.startswith("resp_")
    assert "jan.kowalski@example.com" not in text
    assert model == "text-embedding-3-small"


def test_writes_after_job_left_processing_are_rejected(make_runtime, store):
    runtime = make_runtime(ScriptedInvoker(payload_for(AnalysisType.THEMATIC)))
    job = _claimed_job(store, ["thematic"])
    store.finish(job.id, JobStatus.FAILED, error="Job exceeded hard limit")

    assert runtime.pipeline.run(job) is None
    assert store.list_results(job.id) == []
    assert store.get(job.id).status == JobStatus.FAILED
