"""Aggregation of one verification pass into a VerifierFeedback report."""

import re
from collections import OrderedDict
from dataclasses import dataclass
from agents.rule_tester import RuleTestResult
from agents.sentence_tester import SentenceTestResult
from rosetta.schema import (
    MAX_TOP_RECOMMENDATIONS,
    Confidence,
    Conclusion,
    FailedTest,
    FeedbackSynthesis,
    Issue,
    MissingRule,
    RuleStatus,
    VerifierFeedback,
)

MISSING_RULE_MARKER = "MISSING_RULE_NEEDED"

LIKELIHOOD_WEIGHT = {Confidence.HIGH: 3, Confidence.MEDIUM: 2, Confidence.LOW: 1}
RULE_STATUS_WEIGHT = {
    RuleStatus.WRONG: 3,
    RuleStatus.INCONSISTENT: 2,
    RuleStatus.NEEDS_UPDATE: 2,
    RuleStatus.NEW_NEEDED: 2,
    RuleStatus.UNCLEAR: 1,
}


def _key(text: str) -> str:
    """Normalization used to recognise the same recommendation across tests."""
    return re.sub(r"\s+", " ", text).strip().rstrip(".").casefold()


@dataclass
class ConclusionPolicy:
    """
    Decides between NEEDS_IMPROVEMENT and MAJOR_ISSUES.

    `major_issue_fraction` is the share of failing tests (or of rules judged
    RULE_WRONG) at which a pass counts as having major issues.
    """
    major_issue_fraction: float = 0.5

    def conclude(self, rules: list[RuleTestResult], sentences: list[SentenceTestResult]) -> Conclusion:
        """
        ALL_PASS iff every dispatched test produced an OK verdict.

        Args:
            rules: Rule test results of the pass
            sentences: Sentence test results of the pass

        Returns:
            Conclusion for the pass
        """
        rule_verdicts = [r.verdict for r in rules if r.success]
        sentence_verdicts = [s.verdict for s in sentences if s.success]
        failed = len(rules) + len(sentences) - len(rule_verdicts) - len(sentence_verdicts)

        errant = sum(1 for v in rule_verdicts if v.status != RuleStatus.OK)
        errant += sum(1 for v in sentence_verdicts if not v.is_ok)

        if errant == 0 and failed == 0:
            return Conclusion.ALL_PASS

        tested = len(rule_verdicts) + len(sentence_verdicts)
        if tested == 0:
            return Conclusion.MAJOR_ISSUES
        if errant / tested >= self.major_issue_fraction:
            return Conclusion.MAJOR_ISSUES

        wrong = sum(1 for v in rule_verdicts if v.status == RuleStatus.WRONG)
        if rule_verdicts and wrong / len(rule_verdicts) >= self.major_issue_fraction:
            return Conclusion.MAJOR_ISSUES
        return Conclusion.NEEDS_IMPROVEMENT


def rank_recommendations(rules: list[RuleTestResult], sentences: list[SentenceTestResult]) -> list[str]:
    """
    Rank every recommendation of the pass, most impactful first.

    Impact is the number of tests citing the same fix, then the summed
    weight (rule severity or suggestion likelihood). Ties keep first-seen order.

    Returns:
        At most MAX_TOP_RECOMMENDATIONS recommendation strings
    """
    # key -> [text, citations, weight, first_seen]
    tally: OrderedDict[str, list] = OrderedDict()

    def cite(text: str, weight: int):
        if not text or not text.strip():
            return
        k = _key(text)
        if k not in tally:
            tally[k] = [text.strip(), 0, 0, len(tally)]
        tally[k][1] += 1
        tally[k][2] += weight

    for r in rules:
        if r.success and r.verdict.status != RuleStatus.OK:
            cite(r.verdict.recommendation, RULE_STATUS_WEIGHT.get(r.verdict.status, 1))

    for s in sentences:
        if s.success and not s.verdict.is_ok:
            for suggestion in s.verdict.ranked_suggestions():
                cite(suggestion.suggestion, LIKELIHOOD_WEIGHT[suggestion.likelihood])

    ranked = sorted(tally.values(), key=lambda t: (-t[1], -t[2], t[3]))
    return [t[0] for t in ranked[:MAX_TOP_RECOMMENDATIONS]]


def cluster_issues(rules: list[RuleTestResult], sentences: list[SentenceTestResult]) -> list[Issue]:
    """
    Group failures into issues.

    One issue per failing rule; sentence failures sharing the same top
    suggestion are clustered into a single issue citing every affected id.
    """
    issues = []
    for r in rules:
        if r.success and r.verdict.status != RuleStatus.OK:
            issues.append(Issue(
                title=f"Rule '{r.rule.title}': {r.verdict.status.value}",
                description=r.verdict.reasoning,
                recommendation=r.verdict.recommendation
            ))

    clusters: OrderedDict[str, dict] = OrderedDict()
    for s in sentences:
        if not s.success or s.verdict.is_ok:
            continue
        ranked = s.verdict.ranked_suggestions()
        fix = ranked[0].suggestion if ranked else ""
        k = _key(fix) if fix else f"unexplained:{s.task.test_id}"
        cluster = clusters.setdefault(k, {"fix": fix, "ids": [], "ambiguities": []})
        cluster["ids"].append(s.task.test_id)
        cluster["ambiguities"].extend(s.verdict.ambiguities[:2])

    for cluster in clusters.values():
        ids = ", ".join(cluster["ids"])
        detail = "; ".join(dict.fromkeys(cluster["ambiguities"])) or "No ambiguities reported."
        issues.append(Issue(
            title=f"Sentences {ids} not translatable unambiguously",
            description=f"Affected sentences: {ids}. {detail}",
            recommendation=cluster["fix"]
        ))

    mismatched = [
        s.task.test_id for s in sentences
        if s.success and s.verdict.matches_expected is False
    ]
    if mismatched:
        issues.append(Issue(
            title="Translations differ from the dataset",
            description=(
                f"Blind translations of {', '.join(mismatched)} do not match the expected "
                f"dataset translation."
            ),
            recommendation="Check the rules and vocabulary used for these items against the data."
        ))
    return issues


def find_missing_rules(rules: list[RuleTestResult], sentences: list[SentenceTestResult]) -> list[MissingRule]:
    """Patterns no rule explains: RULE_NEW_NEEDED verdicts and MISSING_RULE_NEEDED ambiguities."""
    found: OrderedDict[str, MissingRule] = OrderedDict()

    for r in rules:
        if r.success and r.verdict.status == RuleStatus.NEW_NEEDED:
            pattern = r.verdict.reasoning or r.rule.title
            found.setdefault(_key(pattern), MissingRule(
                pattern=pattern,
                suggested_rule=r.verdict.recommendation or r.rule.description,
                evidence=[]
            ))

    for s in sentences:
        if not s.success:
            continue
        for ambiguity in s.verdict.ambiguities:
            if MISSING_RULE_MARKER not in ambiguity:
                continue
            k = _key(ambiguity.replace(MISSING_RULE_MARKER, ""))
            if k not in found:
                ranked = s.verdict.ranked_suggestions()
                found[k] = MissingRule(
                    pattern=ambiguity.replace(MISSING_RULE_MARKER, "").strip(" :-") or ambiguity,
                    suggested_rule=ranked[0].suggestion if ranked else "",
                    evidence=[]
                )
            if s.task.test_id not in found[k].evidence:
                found[k].evidence.append(s.task.test_id)
    return list(found.values())


def aggregate(
    rules: list[RuleTestResult],
    sentences: list[SentenceTestResult],
    policy: ConclusionPolicy | None = None
) -> VerifierFeedback:
    """
    Build the feedback report for one pass.

    Only settled results are aggregated; failed calls are listed in
    `failed_tests` and lower the reported coverage.

    Args:
        rules: Rule test results
        sentences: Sentence test results
        policy: Conclusion policy (default thresholds if None)

    Returns:
        VerifierFeedback
    """
    policy = policy or ConclusionPolicy()

    errant_rules = [r.rule.title for r in rules if r.success and r.verdict.status != RuleStatus.OK]
    errant_sentences = [s.task.test_id for s in sentences if s.success and not s.verdict.is_ok]
    failed_tests = [
        FailedTest(kind="rule", target=r.rule.title, error=r.error or "unknown error")
        for r in rules if not r.success
    ] + [
        FailedTest(kind="sentence", target=s.task.test_id, error=s.error or "unknown error")
        for s in sentences if not s.success
    ]

    issues = cluster_issues(rules, sentences)
    if failed_tests:
        targets = ", ".join(f.target for f in failed_tests)
        issues.append(Issue(
            title="Incomplete verification coverage",
            description=f"{len(failed_tests)} verification call(s) failed after a retry: {targets}.",
            recommendation="Results for these items are unknown; re-verify after the next revision."
        ))

    conclusion = policy.conclude(rules, sentences)
    rules_ok = sum(1 for r in rules if r.success) - len(errant_rules)
    sentences_ok = sum(1 for s in sentences if s.success) - len(errant_sentences)
    explanation = (
        f"Tested {len(rules)} rules ({rules_ok} passed, {len(errant_rules)} with issues) and "
        f"{len(sentences)} sentences ({sentences_ok} passed, {len(errant_sentences)} with issues)."
    )
    if failed_tests:
        explanation += f" {len(failed_tests)} test(s) could not be run; coverage is incomplete."
    explanation += f" Conclusion: {conclusion.value}."

    return VerifierFeedback(
        full_explanation=explanation,
        rules_tested_count=len(rules),
        errant_rules=errant_rules,
        sentences_tested_count=len(sentences),
        errant_sentences=errant_sentences,
        issues=issues,
        missing_rules=find_missing_rules(rules, sentences),
        top_recommendations=rank_recommendations(rules, sentences),
        conclusion=conclusion,
        failed_tests=failed_tests
    )


def merge_synthesis(feedback: VerifierFeedback, synthesis: FeedbackSynthesis) -> VerifierFeedback:
    """
    Fold a model-written synthesis into the deterministic report.

    Counts, errant lists and failed tests are kept. The synthesis may
    escalate NEEDS_IMPROVEMENT to MAJOR_ISSUES, never touch ALL_PASS.
    """
    if feedback.conclusion == Conclusion.ALL_PASS:
        return feedback

    missing = OrderedDict((_key(m.pattern), m) for m in synthesis.missing_rules)
    for m in feedback.missing_rules:
        missing.setdefault(_key(m.pattern), m)

    recommendations = list(feedback.top_recommendations)
    seen = {_key(r) for r in recommendations}
    for r in synthesis.top_recommendations:
        if _key(r) not in seen:
            recommendations.append(r)
            seen.add(_key(r))

    conclusion = feedback.conclusion
    if synthesis.major_issues and conclusion == Conclusion.NEEDS_IMPROVEMENT:
        conclusion = Conclusion.MAJOR_ISSUES

    coverage = [i for i in feedback.issues if i.title == "Incomplete verification coverage"]
    return feedback.model_copy(update={
        "full_explanation": f"{feedback.full_explanation}\n\n{synthesis.full_explanation}".strip(),
        "issues": (list(synthesis.issues) + coverage) if synthesis.issues else feedback.issues,
        "missing_rules": list(missing.values()),
        "top_recommendations": recommendations[:MAX_TOP_RECOMMENDATIONS],
        "conclusion": conclusion,
    })
