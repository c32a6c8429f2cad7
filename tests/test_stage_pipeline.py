"""Tests for the per-task stage pipeline."""

import json

import pytest

from thematic_system.exceptions import FatalExternalError
from thematic_system.models import StageName
from thematic_system.pipeline.stages import StagePipeline
from thematic_system.pipeline.state import PipelineState, StageOutcome

from conftest import default_classify


class TestPipelineHappyPath:
    """Test a task flowing through every stage."""

    @pytest.mark.asyncio
    async def test_all_stages_complete(self, fast_settings, stub_generator, task_factory):
        """Test stage order and the fields each stage owns."""
        generator = stub_generator()
        state = await StagePipeline(generator, fast_settings).run(task_factory())

        assert state.error is None
        assert state.completed_stages == [
            StageName.GENERATE_CATEGORIES, StageName.CLASSIFY, StageName.EXTRACT_EVIDENCE, StageName.SUMMARIZE,
        ]
        assert [c.category_id for c in state.categories] == ["price", "speed", "privacy"]
        assert state.derived_question == "What matters most when choosing a VPN?"
        assert state.validation.passed
        assert state.validation.attempts == 1
        assert state.summary.placeholder is False
        assert [c.stage for c in generator.calls] == [
            StageName.GENERATE_CATEGORIES, StageName.CLASSIFY, StageName.EXTRACT_EVIDENCE, StageName.SUMMARIZE,
        ]

    @pytest.mark.asyncio
    async def test_direct_classification_assigns_every_respondent_once(self, fast_settings, stub_generator, task_factory):
        """Test K respondents below the batch threshold get K unique assignments."""
        state = await StagePipeline(stub_generator(), fast_settings).run(task_factory())

        source_ids = [a.source_id for a in state.assignments]
        assert len(state.assignments) == 6
        assert len(set(source_ids)) == 6
        assert state.classification.mode == "direct"
        assert state.classification.missing_source_ids == []

    @pytest.mark.asyncio
    async def test_categories_receive_respondent_answers_deduplicated(self, fast_settings, stub_generator, task_factory):
        """Test category generation sees each distinct answer once."""
        generator = stub_generator()
        answers = [("a", "Fast servers."), ("b", "Fast servers."), ("c", "Cheap price.")]
        await StagePipeline(generator, fast_settings).run(task_factory(answers=answers))

        payload = generator.calls_for("generate_categories")[0].payload
        assert payload["responses"] == ["Fast servers.", "Cheap price."]


class TestStageHalting:
    """Test Err outcomes halt the pipeline."""

    @pytest.mark.asyncio
    async def test_malformed_categories_halt_before_classify(self, fast_settings, stub_generator, task_factory):
        """Test missing required fields stop the task at the first stage."""
        generator = stub_generator(generate_categories=lambda ctx: json.dumps({"categories": [{"title": "x"}]}))
        state = await StagePipeline(generator, fast_settings).run(task_factory())

        assert state.error.stage == StageName.GENERATE_CATEGORIES
        assert state.error.kind == "validation"
        assert state.categories is None
        assert generator.calls_for("classify") == []
        assert generator.calls_for("summarize") == []

    @pytest.mark.asyncio
    async def test_no_answers_is_validation_error(self, fast_settings, stub_generator, task_factory):
        """Test respondents with no answer text cannot be categorized."""
        generator = stub_generator()
        task = task_factory(answers=[("a", ""), ("b", "   ")])
        state = await StagePipeline(generator, fast_settings).run(task)

        assert state.error.kind == "validation"
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_fatal_classification_error_halts(self, fast_settings, stub_generator, task_factory):
        """Test an auth failure during classification fails the task."""
        def denied(ctx):
            raise FatalExternalError("401 Unauthorized", kind="auth")

        generator = stub_generator(classify=denied)
        state = await StagePipeline(generator, fast_settings).run(task_factory())

        assert state.error.stage == StageName.CLASSIFY
        assert state.error.kind == "fatal_external"
        assert state.categories is not None
        assert generator.calls_for("extract_evidence") == []

    @pytest.mark.asyncio
    async def test_unexpected_stage_exception_becomes_error(self, fast_settings, stub_generator, task_factory, monkeypatch):
        """Test a crashing stage is recorded instead of raised."""
        pipeline = StagePipeline(stub_generator(), fast_settings)

        async def crash(state):
            raise KeyError("boom")

        monkeypatch.setitem(pipeline._stages, StageName.CLASSIFY, crash)
        state = await pipeline.run(task_factory())
        assert state.error.kind == "unexpected"
        assert "KeyError" in state.error.message


class TestClassificationBatching:
    """Test the batched classification path."""

    @pytest.mark.asyncio
    async def test_large_task_uses_batches(self, fast_settings, stub_generator, task_factory):
        """Test more respondents than the threshold are classified in batches."""
        answers = [(f"r{i}", f"Fast servers number {i}.") for i in range(30)]
        generator = stub_generator()
        state = await StagePipeline(generator, fast_settings).run(task_factory(answers=answers))

        batches = generator.calls_for("classify")
        assert [len(c.payload["responses"]) for c in batches] == [25, 5]
        assert state.classification.mode == "batched"
        assert state.classification.total_batches == 2
        assert len(state.assignments) == 30

    @pytest.mark.asyncio
    async def test_payload_failure_falls_back_to_batches(self, fast_settings, stub_generator, task_factory):
        """Test a token-limit failure on the direct call switches to batching."""
        calls = []

        def classify(ctx):
            calls.append(ctx)
            if len(calls) == 1:
                raise RuntimeError("This model's maximum context length is 8192 tokens")
            return default_classify(ctx)

        state = await StagePipeline(stub_generator(classify=classify), fast_settings).run(task_factory())
        assert len(calls) == 2
        assert state.classification.mode == "batched"
        assert len(state.assignments) == 6

    @pytest.mark.asyncio
    async def test_partial_direct_classification_is_annotated(self, fast_settings, stub_generator, task_factory):
        """Test a shortfall within the acceptance rate is accepted and recorded."""
        answers = [(f"r{i}", f"Cheap price {i}.") for i in range(10)]

        def classify(ctx):
            data = json.loads(default_classify(ctx))
            data["assignments"] = [a for a in data["assignments"] if a["sourceId"] != "r9"]
            return json.dumps(data)

        state = await StagePipeline(stub_generator(classify=classify), fast_settings).run(task_factory(answers=answers))

        assert state.error is None
        assert state.classification.mode == "direct"
        assert state.classification.missing_source_ids == ["r9"]
        assert state.classification.partial_batches == 1
        assert any("not classified" in w for w in state.classification.warnings)

    @pytest.mark.asyncio
    async def test_exhausted_batches_fail_the_task(self, fast_settings, stub_generator, task_factory):
        """Test a batch that never reaches the acceptance rate fails classification."""
        answers = [(f"r{i}", f"Cheap price {i}.") for i in range(30)]
        state = await StagePipeline(
            stub_generator(classify=lambda ctx: json.dumps({"assignments": []})), fast_settings
        ).run(task_factory(answers=answers))

        assert state.error.stage == StageName.CLASSIFY
        assert state.error.kind == "retry_exhausted"
        assert "Batch 1" in state.error.message


class TestEvidenceLoop:
    """Test the evidence retry loop and its fallbacks."""

    @pytest.mark.asyncio
    async def test_prior_errors_fed_into_next_attempt(self, fast_settings, stub_generator, task_factory):
        """Test a hallucinated first attempt is retried with its errors as context."""
        responses = [
            json.dumps({"excerpts": {"price": [{"sourceId": "r1", "text": "Price is irrelevant to me"}]}}),
            json.dumps({"excerpts": {"price": [{"sourceId": "r1", "text": "The price matters most to me"}]}}),
        ]
        generator = stub_generator(extract_evidence=lambda ctx: responses.pop(0))
        state = await StagePipeline(generator, fast_settings).run(task_factory())

        calls = generator.calls_for("extract_evidence")
        assert len(calls) == 2
        assert calls[0].attempt.attempt == 1
        assert calls[0].attempt.prior_errors == ()
        assert calls[1].attempt.attempt == 2
        assert "HALLUCINATED" in calls[1].attempt.prior_errors[0]
        assert state.validation.passed
        assert state.validation.attempts == 2
        assert state.validation.errors == []

    @pytest.mark.asyncio
    async def test_exhausted_validation_is_reported_not_fatal(self, fast_settings, stub_generator, task_factory):
        """Test three failed attempts still return Ok with passed=False and fallbacks."""
        hallucinated = json.dumps({"excerpts": {"price": [{"sourceId": "r1", "text": "I adore expensive plans"}]}})
        generator = stub_generator(extract_evidence=lambda ctx: hallucinated)
        state = await StagePipeline(generator, fast_settings).run(task_factory())

        assert state.error is None
        assert len(generator.calls_for("extract_evidence")) == 3
        assert state.validation.passed is False
        assert state.validation.attempts == 3
        assert state.validation.dropped_excerpts == 1
        assert any("HALLUCINATED" in e for e in state.validation.errors)
        assert StageName.SUMMARIZE in state.completed_stages

        sources = state.task.sources_by_id()
        for category_id, excerpts in state.excerpts.items():
            assert len(excerpts) == 1
            excerpt = excerpts[0]
            assert excerpt.fallback
            assert excerpt.text in sources[excerpt.source_id].answer_text
        assert set(state.validation.fallback_categories) == {"price", "speed", "privacy"}

    @pytest.mark.asyncio
    async def test_separator_only_excerpts_are_replaced_by_fallbacks(self, fast_settings, stub_generator,
                                                                       task_factory):
        """Test excerpts with no words never count as verified evidence."""
        def evidence(ctx):
            return json.dumps({"excerpts": {
                category["id"]: [{"sourceId": category["responses"][0]["sourceId"], "text": " ... "}]
                for category in ctx.payload["categories"]
            }})

        generator = stub_generator(extract_evidence=evidence)
        state = await StagePipeline(generator, fast_settings).run(task_factory())

        assert state.validation.passed is False
        assert len(generator.calls_for("extract_evidence")) == 3
        assert set(state.validation.fallback_categories) == {"price", "speed", "privacy"}
        for excerpts in state.excerpts.values():
            assert excerpts[0].fallback
            assert excerpts[0].text.strip() != "..."

    @pytest.mark.asyncio
    async def test_feedback_limited_to_top_errors(self, fast_settings, stub_generator, task_factory):
        """Test only the configured number of errors is carried forward."""
        bad = [{"sourceId": "r1", "text": f"made up quote number {i}"} for i in range(8)]
        generator = stub_generator(extract_evidence=lambda ctx: json.dumps({"excerpts": {"price": bad}}))
        await StagePipeline(generator, fast_settings).run(task_factory())

        second = generator.calls_for("extract_evidence")[1]
        assert len(second.attempt.prior_errors) == 5

    @pytest.mark.asyncio
    async def test_unparseable_evidence_consumes_attempt(self, fast_settings, stub_generator, task_factory):
        """Test malformed output is fed back like a validation error."""
        responses = ["not json at all", None]

        def evidence(ctx):
            text = responses.pop(0)
            if text is None:
                return json.dumps({"excerpts": {"price": [{"sourceId": "r1", "text": "The price matters most to me"}]}})
            return text

        generator = stub_generator(extract_evidence=evidence)
        state = await StagePipeline(generator, fast_settings).run(task_factory())
        second = generator.calls_for("extract_evidence")[1]
        assert "No JSON found" in second.attempt.prior_errors[0]
        assert state.validation.passed

    @pytest.mark.asyncio
    async def test_excerpts_capped_per_category(self, fast_settings, stub_generator, task_factory):
        """Test at most MAX_EXCERPTS_PER_CATEGORY excerpts are kept."""
        quotes = [
            {"sourceId": "r1", "text": "The price matters most to me"},
            {"sourceId": "r1", "text": "I want something cheap"},
            {"sourceId": "r5", "text": "Cost is the deciding factor for our family"},
            {"sourceId": "r5", "text": "deciding factor"},
        ]
        generator = stub_generator(extract_evidence=lambda ctx: json.dumps({"excerpts": {"price": quotes}}))
        state = await StagePipeline(generator, fast_settings).run(task_factory())

        assert len(state.excerpts["price"]) == 3
        assert "deciding factor" not in [e.text for e in state.excerpts["price"]]


class TestSummarize:
    """Test best-effort summarization."""

    @pytest.mark.asyncio
    async def test_summary_failure_uses_placeholder(self, fast_settings, stub_generator, task_factory):
        """Test a failed summary call still yields Ok with placeholder content."""
        def broken(ctx):
            raise RuntimeError("503 service unavailable")

        state = await StagePipeline(stub_generator(summarize=broken), fast_settings).run(task_factory())

        assert state.error is None
        assert state.summary.placeholder is True
        assert state.summary.insights
        assert "placeholder" in state.summary_warning

    @pytest.mark.asyncio
    async def test_malformed_summary_uses_placeholder(self, fast_settings, stub_generator, task_factory):
        """Test structural validation failures fall back to placeholder content."""
        generator = stub_generator(summarize=lambda ctx: json.dumps({"headline": "", "summary": "x", "insights": ["y"]}))
        state = await StagePipeline(generator, fast_settings).run(task_factory())
        assert state.summary.placeholder is True


class TestStageOutcome:
    """Test the Ok/Err tagged result."""

    def test_exactly_one_side(self, task_factory):
        """Test an outcome cannot carry both or neither."""
        state = PipelineState(task=task_factory())
        assert StageOutcome.success(state).ok
        failure = StageOutcome.failure(StageName.CLASSIFY, "validation", "bad")
        assert not failure.ok
        with pytest.raises(ValueError):
            StageOutcome()
        with pytest.raises(ValueError):
            StageOutcome(state=state, error=failure.error)
