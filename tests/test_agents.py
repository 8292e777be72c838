"""Tests for the model-backed agents, driven by a scripted LLM."""

import pytest
from agents.answerer import QuestionAnswerer
from agents.extractor import StructuredProblemExtractor
from agents.hypothesizer import InitialHypothesizer
from agents.improver import RuleImprover
from agents.rule_tester import RuleTester, format_ruleset
from agents.sentence_tester import SentenceTask, SentenceTester, build_sentence_tasks
from context import VerificationContext
from errors import (
    AnswerFailed,
    ExtractionFailed,
    HypothesisFailed,
    ImprovementFailed,
    LLMCallFailed,
    SchemaValidationError,
)
from events import AGENT_REASONING, VOCABULARY_UPDATE
from rosetta.schema import (
    Answer,
    AnswersResult,
    Confidence,
    Conclusion,
    ExtractionResult,
    HypothesisExtraction,
    ImprovementExtraction,
    RuleStatus,
    RuleVerdict,
    VerifierFeedback,
    VocabularyChanges,
    VocabularyEntry,
)
from fakes import ScriptedLLM, make_ctx, make_problem, make_rules, sentence_ok


def vocab(form, meaning):
    return VocabularyEntry(foreign_form=form, meaning=meaning)


def vctx_for(ctx, problem=None):
    return VerificationContext(
        problem=problem or make_problem(),
        rules=tuple(make_rules()),
        vocabulary=ctx.vocabulary.snapshot(),
        iteration=1,
        run=ctx
    )


class TestExtractor:
    """Tests for StructuredProblemExtractor."""

    @pytest.mark.asyncio
    async def test_success(self):
        problem = make_problem()
        llm = ScriptedLLM({"ExtractionResult": [ExtractionResult(success=True, data=problem)]})
        ctx = make_ctx()
        result = await StructuredProblemExtractor(llm, "m").extract(ctx, "raw problem")
        assert result == problem
        assert ctx.metrics.timings[0].step_name == "Step 1"

    @pytest.mark.asyncio
    async def test_model_reports_failure(self):
        """The model's explanation is carried into the failure."""
        llm = ScriptedLLM({"ExtractionResult": [
            ExtractionResult(success=False, explanation="No paired examples in the text")
        ]})
        with pytest.raises(ExtractionFailed) as exc:
            await StructuredProblemExtractor(llm, "m").extract(make_ctx(), "just prose")
        assert "No paired examples in the text" in exc.value.message
        assert exc.value.message.startswith("[Extract Structure Step]")

    @pytest.mark.asyncio
    async def test_empty_text_not_sent(self):
        llm = ScriptedLLM({})
        with pytest.raises(ExtractionFailed):
            await StructuredProblemExtractor(llm, "m").extract(make_ctx(), "   ")
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_invalid_output(self):
        llm = ScriptedLLM({"ExtractionResult": [SchemaValidationError("ExtractionResult validation failed")]})
        with pytest.raises(ExtractionFailed, match="Validation failed"):
            await StructuredProblemExtractor(llm, "m").extract(make_ctx(), "raw problem")

    @pytest.mark.asyncio
    async def test_no_questions(self):
        problem = make_problem().model_copy(update={"questions": ()})
        llm = ScriptedLLM({"ExtractionResult": [ExtractionResult(success=True, data=problem)]})
        with pytest.raises(ExtractionFailed, match="0 questions"):
            await StructuredProblemExtractor(llm, "m").extract(make_ctx(), "raw problem")


class TestHypothesizer:
    """Tests for InitialHypothesizer (reason then extract)."""

    @pytest.mark.asyncio
    async def test_rules_and_vocabulary(self):
        llm = ScriptedLLM({
            "text": [("## Rules\n1. Past tense suffix -ka", "segmenting tuka as tu-ka")],
            "HypothesisExtraction": [HypothesisExtraction(
                success=True,
                rules=make_rules(),
                vocabulary=[vocab("tu", "run"), vocab("mi", "eat")]
            )],
        })
        ctx = make_ctx()
        rules = await InitialHypothesizer(llm, "r", "e").hypothesize(ctx, make_problem())

        assert [r.title for r in rules] == ["Past tense suffix", "Present tense"]
        assert ctx.vocabulary.count() == 2
        assert [t.step_name for t in ctx.metrics.timings] == ["Step 2a", "Step 2b"]
        assert "## Rules" in llm.prompts[1]
        assert len(ctx.events.of_type(AGENT_REASONING)) == 1
        assert len(ctx.events.of_type(VOCABULARY_UPDATE)) == 1

    @pytest.mark.asyncio
    async def test_repeated_titles_made_distinct(self):
        """Two extracted rules with one title are tested and reported separately."""
        llm = ScriptedLLM({
            "text": ["## Rules\n1. Past tense\n2. Past tense"],
            "HypothesisExtraction": [HypothesisExtraction.model_validate({
                "success": True,
                "rules": [
                    {"title": "Past tense", "description": "Suffix -ka"},
                    {"title": "Past tense", "description": "Stem vowel change"},
                ],
            })],
        })
        rules = await InitialHypothesizer(llm, "r", "e").hypothesize(make_ctx(), make_problem())

        assert [r.title for r in rules] == ["Past tense", "Past tense (2)"]
        assert format_ruleset(rules, rules[1]).count("[TESTING THIS RULE]") == 1

    @pytest.mark.asyncio
    async def test_empty_reasoning(self):
        llm = ScriptedLLM({"text": ["   "]})
        with pytest.raises(HypothesisFailed, match="no analysis"):
            await InitialHypothesizer(llm, "r", "e").hypothesize(make_ctx(), make_problem())

    @pytest.mark.asyncio
    async def test_reasoning_call_fails(self):
        llm = ScriptedLLM({"text": [LLMCallFailed("LLM call failed after 3 attempts")]})
        with pytest.raises(HypothesisFailed, match="Reasoning call failed"):
            await InitialHypothesizer(llm, "r", "e").hypothesize(make_ctx(), make_problem())

    @pytest.mark.asyncio
    async def test_no_rules(self):
        llm = ScriptedLLM({
            "text": ["I could not find any pattern."],
            "HypothesisExtraction": [HypothesisExtraction(success=False, explanation="no rules in analysis")],
        })
        with pytest.raises(HypothesisFailed) as exc:
            await InitialHypothesizer(llm, "r", "e").hypothesize(make_ctx(), make_problem())
        assert exc.value.message == "[Initial Hypothesis Step] Extraction failed: no rules in analysis"


class TestImprover:
    """Tests for RuleImprover vocabulary changes."""

    def feedback(self):
        return VerifierFeedback(conclusion=Conclusion.NEEDS_IMPROVEMENT, errant_rules=["Past tense suffix"])

    async def improve(self, ctx, changes):
        llm = ScriptedLLM({
            "text": ["## Revised rules\n..."],
            "ImprovementExtraction": [ImprovementExtraction(
                success=True, rules=make_rules()[:1], vocabulary_changes=changes
            )],
        })
        return await RuleImprover(llm, "r", "e").improve(ctx, make_problem(), make_rules(), self.feedback(), 1)

    @pytest.mark.asyncio
    async def test_changes_applied(self):
        ctx = make_ctx()
        ctx.vocabulary.add([vocab("tu", "run"), vocab("mi", "eat")])
        rules = await self.improve(ctx, VocabularyChanges(
            remove=["mi"], update=[vocab("tu", "walk")], add=[vocab("ka", "past")]
        ))
        assert len(rules) == 1
        assert {e.foreign_form: e.meaning for e in ctx.vocabulary.get()} == {"tu": "walk", "ka": "past"}

    @pytest.mark.asyncio
    async def test_clear_applied_first(self):
        """Clear runs before the other edits, so updates of old keys are skipped."""
        ctx = make_ctx()
        ctx.vocabulary.add([vocab("tu", "run"), vocab("mi", "eat")])
        await self.improve(ctx, VocabularyChanges(
            clear=True, update=[vocab("tu", "walk")], add=[vocab("ka", "past")]
        ))
        assert [e.foreign_form for e in ctx.vocabulary.get()] == ["ka"]

    @pytest.mark.asyncio
    async def test_no_rules(self):
        llm = ScriptedLLM({
            "text": ["Nothing to change."],
            "ImprovementExtraction": [ImprovementExtraction(success=True, rules=[])],
        })
        with pytest.raises(ImprovementFailed):
            await RuleImprover(llm, "r", "e").improve(make_ctx(), make_problem(), make_rules(), self.feedback(), 1)


class TestAnswerer:
    """Tests for QuestionAnswerer."""

    def problem(self):
        return make_problem(questions=[
            {"id": "Q1", "type": "translate-to-english", "input": "mi"},
            {"id": "Q2", "type": "translate-to-english", "input": "tuka"},
        ])

    @pytest.mark.asyncio
    async def test_answers_in_question_order(self):
        llm = ScriptedLLM({"AnswersResult": [AnswersResult(success=True, answers=[
            Answer(question_id="Q2", answer="he ran", confidence=Confidence.HIGH),
            Answer(question_id="Q9", answer="???", confidence=Confidence.LOW),
            Answer(question_id="Q1", answer="he eats", confidence=Confidence.MEDIUM),
        ])]})
        answers = await QuestionAnswerer(llm, "m").answer(make_ctx(), self.problem(), make_rules())
        assert [a.question_id for a in answers] == ["Q1", "Q2"]

    @pytest.mark.asyncio
    async def test_unanswered_question_fails(self):
        """Every question needs an answer; a partial list is a failure."""
        llm = ScriptedLLM({"AnswersResult": [AnswersResult(success=True, answers=[
            Answer(question_id="Q1", answer="he eats", confidence=Confidence.HIGH),
        ])]})
        with pytest.raises(AnswerFailed, match=r"No answer for questions: \['Q2'\]"):
            await QuestionAnswerer(llm, "m").answer(make_ctx(), self.problem(), make_rules())

    @pytest.mark.asyncio
    async def test_duplicate_answers_collapsed(self):
        """Only the first answer per question id is kept."""
        llm = ScriptedLLM({"AnswersResult": [AnswersResult(success=True, answers=[
            Answer(question_id="Q1", answer="he eats", confidence=Confidence.HIGH),
            Answer(question_id="Q2", answer="he ran", confidence=Confidence.HIGH),
            Answer(question_id="Q1", answer="he ate", confidence=Confidence.LOW),
        ])]})
        answers = await QuestionAnswerer(llm, "m").answer(make_ctx(), self.problem(), make_rules())
        assert [(a.question_id, a.answer) for a in answers] == [("Q1", "he eats"), ("Q2", "he ran")]

    @pytest.mark.asyncio
    async def test_failure(self):
        llm = ScriptedLLM({"AnswersResult": [AnswersResult(success=False, explanation="rules contradict")]})
        with pytest.raises(AnswerFailed, match="rules contradict"):
            await QuestionAnswerer(llm, "m").answer(make_ctx(), self.problem(), make_rules())

    @pytest.mark.asyncio
    async def test_call_failure(self):
        llm = ScriptedLLM({"AnswersResult": [LLMCallFailed("timeout")]})
        with pytest.raises(AnswerFailed, match="Answer call failed"):
            await QuestionAnswerer(llm, "m").answer(make_ctx(), self.problem(), make_rules())


class TestRuleTester:
    """Tests for the rule leaf verifier."""

    def test_target_rule_marked(self):
        rules = make_rules()
        text = format_ruleset(rules, rules[1])
        assert ">>> 2. **Present tense**" in text
        assert "    1. **Past tense suffix**" in text

    @pytest.mark.asyncio
    async def test_verdict(self):
        llm = ScriptedLLM({"RuleVerdict": [RuleVerdict(status=RuleStatus.OK)]})
        ctx = make_ctx()
        result = await RuleTester(llm, "m").test(make_rules()[0], vctx_for(ctx))
        assert result.success
        assert "[TESTING THIS RULE]" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_error_captured(self):
        """Model failures become error results, never exceptions."""
        llm = ScriptedLLM({"RuleVerdict": [LLMCallFailed("LLM call failed after 3 attempts")]})
        result = await RuleTester(llm, "m").test(make_rules()[0], vctx_for(make_ctx()))
        assert not result.success
        assert "LLM call failed" in result.error


class TestSentenceTester:
    """Tests for the sentence leaf verifier."""

    def test_tasks(self):
        tasks = build_sentence_tasks(make_problem())
        assert [t.test_id for t in tasks] == ["#1", "#2", "#3", "Q1"]
        assert tasks[0].content == "tuka"
        assert tasks[0].expected == "he ran"
        assert tasks[-1].expected is None

    def test_reverse_tasks(self):
        tasks = build_sentence_tasks(make_problem(), bidirectional=True)
        reverse = next(t for t in tasks if t.test_id == "#1 (reverse)")
        assert reverse.content == "he ran"
        assert reverse.expected == "tuka"

    @pytest.mark.asyncio
    async def test_blind_translation_compared(self):
        """The expected value stays out of the prompt and is compared afterwards."""
        task = SentenceTask("#1", "tuka", "foreignForm", "english", expected="he ran")
        llm = ScriptedLLM({"SentenceVerdict": [sentence_ok("He ran.")]})
        result = await SentenceTester(llm, "m").test(task, vctx_for(make_ctx()))
        assert "he ran" not in llm.prompts[0]
        assert result.verdict.matches_expected is True

    @pytest.mark.asyncio
    async def test_mismatch(self):
        task = SentenceTask("#1", "tuka", "foreignForm", "english", expected="he ran")
        llm = ScriptedLLM({"SentenceVerdict": [sentence_ok("he runs")]})
        result = await SentenceTester(llm, "m").test(task, vctx_for(make_ctx()))
        assert result.verdict.matches_expected is False
        assert result.verdict.is_ok

    @pytest.mark.asyncio
    async def test_question_not_compared(self):
        task = SentenceTask("Q1", "mi", "foreignForm", "english")
        llm = ScriptedLLM({"SentenceVerdict": [sentence_ok("he eats")]})
        result = await SentenceTester(llm, "m").test(task, vctx_for(make_ctx()))
        assert result.verdict.matches_expected is None

    @pytest.mark.asyncio
    async def test_error_captured(self):
        task = SentenceTask("#1", "tuka", "foreignForm", "english", expected="he ran")
        llm = ScriptedLLM({"SentenceVerdict": [SchemaValidationError("SentenceVerdict validation failed")]})
        result = await SentenceTester(llm, "m").test(task, vctx_for(make_ctx()))
        assert not result.success
        assert "validation failed" in result.error
