"""Rule tester: checks a single rule against every dataset item it covers."""

import logging
from dataclasses import dataclass
from agents.reasoning import to_prompt_json
from context import VerificationContext
from rosetta.schema import Rule, RuleVerdict

log = logging.getLogger(__name__)

INSTRUCTIONS = """You are a specialized linguistic rule validator. Test a SINGLE rule against a
linguistic dataset to decide whether it is correct, consistent and sufficient.

Process:
1. Find ALL dataset items where the rule should apply.
2. Apply the rule to each of them yourself and compare with the actual data.
3. Note inconsistencies, edge cases and missing conditions.

status is one of:
- RULE_OK: correct, consistent and sufficient for every relevant item
- RULE_WRONG: contradicts the data or produces wrong output
- RULE_INCONSISTENT: works sometimes but needs exceptions or conditions
- RULE_UNCLEAR: too vague to apply consistently
- RULE_NEEDS_UPDATE: needs modification to fit the data
- RULE_NEW_NEEDED: the pattern calls for an additional rule

reasoning: 1-2 sentences with specific evidence, citing item ids.
recommendation: specific fix; empty if RULE_OK."""


@dataclass
class RuleTestResult:
    """Outcome of one rule test: a verdict, or the error that prevented one."""
    rule: Rule
    verdict: RuleVerdict | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.verdict is not None


def format_ruleset(rules: tuple[Rule, ...] | list[Rule], target: Rule | None = None) -> str:
    """Numbered rule list; the target rule is marked with >>> <<<."""
    lines = []
    for i, r in enumerate(rules, 1):
        is_target = target is not None and r.title == target.title
        prefix = ">>> " if is_target else "    "
        suffix = " <<< [TESTING THIS RULE]" if is_target else ""
        lines.append(f"{prefix}{i}. **{r.title}** ({r.confidence.value}): {r.description}{suffix}")
    return "\n\n".join(lines)


class RuleTester:
    """Leaf verifier for one rule. Never raises on model failure."""

    def __init__(self, llm, model: str):
        self.llm = llm
        self.model = model

    def build_prompt(self, rule: Rule, vctx: VerificationContext) -> str:
        """Prompt for testing `rule` in the context of the whole rule set."""
        problem = vctx.problem
        return f"""# Rule to Test

**Title:** {rule.title}
**Description:** {rule.description}
**Confidence:** {rule.confidence.value}

Test this rule against ALL relevant items in the dataset.

## Full Ruleset Context

The rule under test is marked with >>>. Use the others only to understand interactions.

{format_ruleset(vctx.rules, rule)}

## Dataset Context
{problem.context}

## Dataset Items
{to_prompt_json(list(problem.dataset))}

## Vocabulary
{to_prompt_json(list(vctx.vocabulary))}

## Questions (for reference)
{to_prompt_json(list(problem.questions))}"""

    async def test(self, rule: Rule, vctx: VerificationContext) -> RuleTestResult:
        """
        Test one rule.

        Args:
            rule: Rule under test
            vctx: Read-only pass context

        Returns:
            RuleTestResult with a verdict, or with an error message on failure
        """
        try:
            generation = await self.llm.generate(
                self.build_prompt(rule, vctx),
                schema=RuleVerdict,
                system=INSTRUCTIONS,
                model=self.model
            )
        except Exception as e:
            log.warning(f"Rule test failed for {rule.title!r}: {e}")
            return RuleTestResult(rule=rule, error=f"Rule test failed: {e}")

        return RuleTestResult(rule=rule, verdict=generation.object)
