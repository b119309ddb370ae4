from __future__ import annotations

import argparse
import json
import logging
import uuid
from dataclasses import replace
from typing import List

from playwright.sync_api import sync_playwright

from autoscrape.config import load_config
from autoscrape.controller import ThreadPoolController
from autoscrape.errors import ErrorStats, classify
from autoscrape.factory import AgentFactory
from autoscrape.models import GoalJob, GoalResult
from autoscrape.orchestrator import AutonomousOrchestrator
from autoscrape.page import PlaywrightPage
from autoscrape.smart_controller import SmartController
from autoscrape.storage import JsonlStorage
from autoscrape.strategies import IncreaseConcurrencyStrategy, ReduceConcurrencyStrategy

logger = logging.getLogger(__name__)


def _load_jobs(path: str, max_steps: int, timeout: float) -> List[GoalJob]:
    """Read {"goal": ..., "url": ...} objects, one per line."""
    jobs: List[GoalJob] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            item = json.loads(line)
            jobs.append(
                GoalJob(
                    job_id=item.get("id") or str(uuid.uuid4()),
                    goal=item["goal"],
                    url=item["url"],
                    max_steps=int(item.get("max_steps", max_steps)),
                    timeout=float(item.get("timeout", timeout)),
                )
            )
    if not jobs:
        raise ValueError(f"No jobs found in {path}")
    return jobs


def _build_jobs(args: argparse.Namespace, max_steps: int, timeout: float) -> List[GoalJob]:
    if args.jobs:
        return _load_jobs(args.jobs, max_steps, timeout)
    if len(args.goal) != len(args.url):
        raise SystemExit("--goal and --url must be given the same number of times")
    return [GoalJob(str(uuid.uuid4()), goal, url, max_steps, timeout) for goal, url in zip(args.goal, args.url)]


def _browser_runner(orchestrator: AutonomousOrchestrator, headless: bool, error_stats: ErrorStats):
    """Job function for the pool: one browser per job, launched on the worker thread."""

    def run(job: GoalJob) -> GoalResult:
        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(headless=headless)
                try:
                    page = browser.new_page()
                    return orchestrator.execute_goal(PlaywrightPage(page), job.goal, job.url, job.max_steps, job.timeout)
                finally:
                    browser.close()
        except Exception as exc:  # noqa: BLE001
            error = classify(exc, {"job_id": job.job_id})
            error_stats.record(error)
            logger.error("Job %s failed outside the goal loop: %s", job.job_id, error.message)
            return GoalResult(job.goal, job.url, False, "FAILED", errors=[error.to_dict()])

    return run


def run_jobs(args: argparse.Namespace) -> int:
    config = load_config().with_overrides(
        db_path=args.db,
        max_steps=args.max_steps,
        goal_timeout=args.timeout,
    )
    if args.oracle:
        config = config.with_overrides(oracle=replace(config.oracle, provider=args.oracle))
    jobs = _build_jobs(args, config.max_steps, config.goal_timeout)

    factory = AgentFactory(config)
    try:
        orchestrator = factory.create_orchestrator()
        storage = JsonlStorage(args.results)
        initial_limit = args.initial_limit or max(1, args.max_workers // 2)
        controller = ThreadPoolController(max_workers=args.max_workers, initial_limit=initial_limit)
        smart = SmartController(
            factory.metrics,
            controller,
            [ReduceConcurrencyStrategy(), IncreaseConcurrencyStrategy(max_limit=args.max_workers)],
            eval_interval_secs=args.eval_interval,
            window_secs=args.window_secs,
        )

        def report(result: GoalResult) -> None:
            storage.write(result)
            print(json.dumps({"goal": result.goal, "url": result.url, "success": result.success, "status": result.status,
                              "confidence": round(result.aggregate_confidence, 3), "steps": result.steps, "data": result.data},
                             ensure_ascii=False, default=str))

        runner = _browser_runner(orchestrator, headless=not args.headed, error_stats=factory.error_stats)
        controller.start()
        smart.start()
        try:
            results = controller.run_all(runner, jobs, on_result=report)
        finally:
            smart.stop()
            controller.stop(wait=True)
            storage.close()
        ok = sum(1 for r in results if r.success)

        snapshot = factory.metrics.snapshot(window_secs=args.window_secs)
        learning = factory.store.metrics()
        print(f"\nDONE: success={ok} fail={len(jobs) - ok} total={len(jobs)}")
        print(f"steps={snapshot.total_steps} failed_steps={snapshot.failed_steps} avg_confidence={snapshot.avg_confidence:.2f} "
              f"timeouts={snapshot.timeout_count} circuit_open={snapshot.circuit_open_count}")
        print(f"patterns={learning.total_patterns} interactions={learning.total_interactions} "
              f"pattern_success_rate={learning.success_rate:.2f}")
        print(f"errors={json.dumps(factory.error_stats.snapshot()['errors_by_code'])}")
    finally:
        factory.close()
    return 0 if ok == len(jobs) else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Run extraction goals against web pages")
    parser.add_argument("--goal", action="append", default=[], help="Natural-language goal (repeatable)")
    parser.add_argument("--url", action="append", default=[], help="Start URL for the matching --goal (repeatable)")
    parser.add_argument("--jobs", help="JSONL file of {goal, url} jobs instead of --goal/--url")
    parser.add_argument("--results", default="results.jsonl", help="Output JSONL file path")

    parser.add_argument("--db", default=None, help="Pattern store path (default from AUTOSCRAPE_DB)")
    parser.add_argument("--oracle", choices=("auto", "openai", "http", "rules"), default=None, help="Reasoning oracle")
    parser.add_argument("--max-steps", type=int, default=None, help="Step budget per goal")
    parser.add_argument("--timeout", type=float, default=None, help="Wall-clock budget per goal, seconds")
    parser.add_argument("--max-workers", type=int, default=2, help="Concurrent goal runs (one browser each)")
    parser.add_argument("--initial-limit", type=int, default=None, help="Starting concurrency (default: half of --max-workers)")
    parser.add_argument("--eval-interval", type=float, default=10.0, help="Seconds between concurrency adjustments")
    parser.add_argument("--headed", action="store_true", help="Show the browser windows")
    parser.add_argument("--window-secs", type=int, default=3600, help="Metrics window for concurrency tuning and the summary")
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if not args.jobs and not args.goal:
        print("Nothing to do. Use --goal/--url or --jobs.")
        return
    raise SystemExit(run_jobs(args))


if __name__ == "__main__":
    main()
