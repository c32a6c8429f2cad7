import argparse
import asyncio
import logging
import sys

import structlog

from .config import Settings
from .llm.generator import LLMGenerator
from .models import Task
from .orchestrator import FanOutOrchestrator
from .utils.file_ops import atomic_write_json, read_json_records


def _init_logging(settings: Settings, verbose: bool = False):
    level = "DEBUG" if verbose else settings.LOG_LEVEL.upper()
    logging.basicConfig(level=level, stream=sys.stderr)
    renderer = structlog.processors.JSONRenderer() if settings.LOG_JSON else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[structlog.processors.add_log_level, structlog.processors.TimeStamper(fmt="iso"), renderer],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


async def _run(settings: Settings, tasks, concurrency: int):
    generator = LLMGenerator(settings)
    try:
        orchestrator = FanOutOrchestrator(generator, settings)
        return await orchestrator.run_all(tasks, concurrency_limit=concurrency)
    finally:
        await generator.aclose()


def main():
    p = argparse.ArgumentParser(prog="thematic-system", description="Resilient thematic analysis of survey responses")
    p.add_argument("--input", required=True, help="JSON file with a list of tasks")
    p.add_argument("--output", default="outputs/run_report.json")
    p.add_argument("--concurrency", type=int, default=None, help="Tasks in flight (defaults to MAX_CONCURRENT_TASKS)")
    p.add_argument("--timeout", type=float, default=None, help="Per-task timeout in seconds")
    p.add_argument("--verbose", action="store_true", help="Verbose output")
    args = p.parse_args()

    overrides = {}
    if args.timeout is not None:
        overrides["TASK_TIMEOUT_SECONDS"] = args.timeout
    settings = Settings(**overrides)  # instantiation triggers validators
    _init_logging(settings, args.verbose)
    log = structlog.get_logger("thematic_system.main")

    tasks = [Task.model_validate(record) for record in read_json_records(args.input)]
    log.info("tasks_loaded", count=len(tasks), path=args.input)

    report = asyncio.run(_run(settings, tasks, args.concurrency))
    atomic_write_json(args.output, report.to_dict())

    print(f"Report written to {args.output}", file=sys.stderr)
    print(
        f"full={report.full_success_count} partial={report.partial_success_count} "
        f"failed={report.failure_count} skipped={report.skipped_count} "
        f"weighted_completion={report.weighted_completion_rate:.1%}",
        file=sys.stderr,
    )
    return 0 if report.failure_count == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
