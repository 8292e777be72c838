#!/usr/bin/env python3
"""Main entry point for the Rosetta Stone problem solver."""

import argparse
import asyncio
import dataclasses
import logging
import sys
from dotenv import load_dotenv

from agents.llm import LLMClient
from config import Settings
from context import RunContext
from data.problems import find_example, list_examples, load_problem
from runner import Pipeline

load_dotenv()
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(message)s"
)
log = logging.getLogger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    p = argparse.ArgumentParser(description="Solve Linguistics Olympiad Rosetta Stone problems")
    source = p.add_mutually_exclusive_group(required=True)
    source.add_argument("--problem-file", type=str,
                        help="Path to a text or Markdown file with the problem")
    source.add_argument("--example", type=str,
                        help="Name of an example problem in --examples-dir")
    source.add_argument("--list-examples", action="store_true",
                        help="List example problems and exit")
    p.add_argument("--examples-dir", type=str, default="./examples",
                   help="Directory holding *_Input.md example problems")
    p.add_argument("--max-iterations", type=int, default=None,
                   help="Maximum rule improvement rounds (default: 4)")
    p.add_argument("--max-concurrent", type=int, default=None,
                   help="Maximum concurrent verifier calls (default: 8)")
    p.add_argument("--max-cost", type=float, default=None,
                   help="Maximum API cost in dollars (default: 5.0)")
    p.add_argument("--model", type=str, default=None,
                   help="Model for every agent (default: openai/gpt-oss-20b)")
    p.add_argument("--no-log-file", action="store_true",
                   help="Do not write the Markdown execution log")
    return p.parse_args(argv)


def build_settings(args) -> Settings:
    """Environment settings with command line overrides applied."""
    settings = Settings.from_env()
    overrides = {
        "max_iterations": args.max_iterations,
        "max_concurrent": args.max_concurrent,
        "max_cost": args.max_cost,
        "model": args.model,
    }
    return dataclasses.replace(settings, **{k: v for k, v in overrides.items() if v is not None})


def read_problem(args) -> str | None:
    if args.problem_file:
        return load_problem(args.problem_file)
    example = find_example(args.examples_dir, args.example)
    if example is None:
        log.error(f"Example {args.example!r} not found in {args.examples_dir}")
        return None
    return example.read()


async def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.list_examples:
        examples = list(list_examples(args.examples_dir))
        if not examples:
            print(f"No examples found in {args.examples_dir}")
        for example in examples:
            marker = " (with solution)" if example.solution_path else ""
            print(f"{example.name}{marker}")
        return 0

    settings = build_settings(args)

    # Check for API key
    if not settings.api_key:
        log.error("OPENROUTER_API_KEY not found in environment")
        return 1

    raw_text = read_problem(args)
    if raw_text is None:
        return 1

    log.info("Starting Rosetta solver")
    log.info(f"  Model: {settings.model}")
    log.info(f"  Max iterations: {settings.max_iterations}")
    log.info(f"  Max concurrent: {settings.max_concurrent}")
    log.info(f"  Max cost: ${settings.max_cost}")

    # Context first: the LLM cost callback feeds the run's guards
    ctx = RunContext.create(settings, write_log=not args.no_log_file)
    llm = LLMClient(
        api_key=settings.api_key,
        model=settings.model,
        base_url=settings.base_url,
        on_cost=ctx.guards.record_cost,
        timeout=settings.timeout,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay
    )
    pipeline = Pipeline(settings, llm)

    try:
        result = await pipeline.run(raw_text, ctx=ctx)
    except KeyboardInterrupt:
        log.info("Interrupted")
        return 130

    if ctx.log.path:
        metrics_path = ctx.log.path.with_suffix(".metrics.json")
        ctx.metrics.save(str(metrics_path))
        log.info(f"Execution log: {ctx.log.path}")
        log.info(f"Metrics saved to {metrics_path}")

    if not result.ok:
        print(result.message, file=sys.stderr)
        return 1

    if result.degraded:
        print(f"Note: rules still had issues after {result.iterations} improvement rounds.\n")
    for answer in result.answers:
        print(f"{answer.question_id}: {answer.answer}  [{answer.confidence.value}]")
        if answer.working_steps:
            print(f"    {answer.working_steps}")
    return 0


def cli():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
