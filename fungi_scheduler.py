#!/usr/bin/env python3
"""fungi_scheduler -- periodic fungi lifecycle and mention answering.

Runs the lifecycle (score, publish/scrape, evolve) and mention answering on
configurable intervals. No HTTP server; communicates health via heartbeat.

Design:
- Initial search seeds the rule system once at startup
- Task-based scheduler with configurable intervals per task
- Sequential execution to respect X API rate limits
- Fail-safe: task failures logged and skipped

Usage:
  python fungi_scheduler.py
  python fungi_scheduler.py --once
  python fungi_scheduler.py --task answer_mentions --force
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

sys.path.insert(0, str(Path(__file__).parent))

from fungi.config import FUNGI_DIR, load_evolution_config, load_fungi_config
from fungi.diagnostics import log_exception, setup_component_logging
from fungi.evolution import EvolutionaryEngine
from fungi.fitness import get_fitness_scorer
from fungi.lifecycle import LifecycleController

logger = logging.getLogger("fungi.scheduler")

SCHEDULER_DIR = FUNGI_DIR / "scheduler"
HEARTBEAT_FILE = SCHEDULER_DIR / "heartbeat.json"
STATE_FILE = SCHEDULER_DIR / "state.json"

CHECK_INTERVAL = 30  # Main loop checks every 30s which tasks are due


# ---------------------------------------------------------------------------
# State management
# ---------------------------------------------------------------------------


def _load_state() -> Dict[str, Any]:
    """Load scheduler state from disk."""
    try:
        if STATE_FILE.exists():
            return json.loads(STATE_FILE.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        logger.debug("Failed to load state: %s", e)
    return {}


def _save_state(state: Dict[str, Any]) -> None:
    """Persist scheduler state."""
    try:
        SCHEDULER_DIR.mkdir(parents=True, exist_ok=True)
        STATE_FILE.write_text(json.dumps(state, indent=2), encoding="utf-8")
    except OSError as e:
        logger.debug("Failed to save state: %s", e)


def write_scheduler_heartbeat(task_stats: Dict[str, Any], fungi: Optional[Dict[str, Any]] = None) -> None:
    """Write heartbeat file for watchdog monitoring."""
    try:
        SCHEDULER_DIR.mkdir(parents=True, exist_ok=True)
        HEARTBEAT_FILE.write_text(
            json.dumps({"ts": time.time(), "stats": task_stats, "fungi": fungi or {}}, indent=2, default=str),
            encoding="utf-8",
        )
    except OSError as e:
        logger.debug("Failed to write heartbeat: %s", e)


def scheduler_heartbeat_age_s() -> Optional[float]:
    """Return heartbeat age in seconds, or None if missing."""
    try:
        if not HEARTBEAT_FILE.exists():
            return None
        data = json.loads(HEARTBEAT_FILE.read_text(encoding="utf-8"))
        ts = float(data.get("ts", 0))
        if ts <= 0:
            return None
        return max(0.0, time.time() - ts)
    except (json.JSONDecodeError, OSError, TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def task_lifecycle(controller: LifecycleController, state: Dict[str, Any]) -> Dict[str, Any]:
    """Score, publish/scrape and evolve the current rule system."""
    stats = controller.run_lifecycle()
    state["cycles"] = controller.state.cycles
    return stats


def task_answer_mentions(controller: LifecycleController, state: Dict[str, Any]) -> Dict[str, Any]:
    """Answer new mentions with the current rule system."""
    stats = controller.answer_mentions()
    if controller.state.last_mention_id:
        state["last_mention_id"] = controller.state.last_mention_id
    return stats


TASKS = {
    "lifecycle": {
        "fn": task_lifecycle,
        "config_key_interval": "lifecycle_interval",
        "config_key_enabled": "lifecycle_enabled",
    },
    "answer_mentions": {
        "fn": task_answer_mentions,
        "config_key_interval": "answer_interval",
        "config_key_enabled": "answer_enabled",
    },
}


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------


def run_due_tasks(
    controller: LifecycleController,
    config: Dict[str, Any],
    state: Dict[str, Any],
    only_task: Optional[str] = None,
    force: bool = False,
) -> Dict[str, Any]:
    """Check which tasks are due, run them sequentially, update state."""
    now = time.time()
    combined_stats: Dict[str, Any] = {}

    for task_name, task_info in TASKS.items():
        if only_task and task_name != only_task:
            continue

        enabled = config.get(task_info["config_key_enabled"], True)
        if not enabled and not force:
            continue

        interval = config.get(task_info["config_key_interval"], 600)
        last_run = state.get(f"last_run_{task_name}", 0.0)

        if not force and (now - last_run) < interval:
            continue

        logger.info("Running task: %s", task_name)
        try:
            stats = task_info["fn"](controller, state)
            state[f"last_run_{task_name}"] = time.time()
            state[f"last_result_{task_name}"] = "ok"
            combined_stats[task_name] = stats
        except Exception as e:
            state[f"last_result_{task_name}"] = f"error: {str(e)[:200]}"
            log_exception("scheduler", f"task {task_name} failed", e)
            combined_stats[task_name] = {"error": str(e)[:200]}

    _save_state(state)
    return combined_stats


def build_controller(config: Dict[str, Any]) -> LifecycleController:
    from fungi.x_channel import get_x_channel

    return LifecycleController(
        get_x_channel(),
        engine=EvolutionaryEngine(config=load_evolution_config()),
        scorer=get_fitness_scorer(config.get("fitness_scorer", "constant")),
        config=config,
    )


def main():
    ap = argparse.ArgumentParser(description="Fungi lifecycle scheduler")
    ap.add_argument("--once", action="store_true", help="Run all due tasks once then exit")
    ap.add_argument("--task", type=str, default=None, choices=sorted(TASKS), help="Run a specific task")
    ap.add_argument("--force", action="store_true", help="Run even if not due")
    args = ap.parse_args()

    setup_component_logging("scheduler")
    logger.info("Fungi scheduler starting")

    config = load_fungi_config()
    if not config.get("enabled", True):
        logger.info("Scheduler disabled in tuneables.json")
        return

    state = _load_state()
    # Rule systems live in memory only; every process start re-seeds.
    for task_name in TASKS:
        state.pop(f"last_run_{task_name}", None)

    controller = build_controller(config)
    controller.state.last_mention_id = state.get("last_mention_id")
    controller.run_initial_search()

    stop_event = threading.Event()

    def _shutdown(signum=None, frame=None):
        logger.info("Scheduler shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    # Single run mode
    if args.once or args.task:
        stats = run_due_tasks(
            controller, config, state,
            only_task=args.task,
            force=args.force or bool(args.task),
        )
        write_scheduler_heartbeat(stats, controller.snapshot())
        logger.info("Single run complete: %s", json.dumps(stats, default=str))
        return

    logger.info(
        "Scheduler daemon started (lifecycle every %ss, answering every %ss)",
        config.get("lifecycle_interval"), config.get("answer_interval"),
    )
    while not stop_event.is_set():
        try:
            stats = run_due_tasks(controller, config, state)
            write_scheduler_heartbeat(stats, controller.snapshot())
            if stats:
                logger.info("Tasks completed: %s", list(stats.keys()))
        except Exception as e:
            log_exception("scheduler", "scheduler cycle failed", e)

        stop_event.wait(CHECK_INTERVAL)

    logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
