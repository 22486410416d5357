"""
Automation Hub - main entry point.

Commands:
  run       Run the scheduler headless until SIGINT/SIGTERM
  serve     Run the HTTP API (webhooks + admin) with uvicorn
  trigger   Run one workflow once and print the sealed run
  recover   Seal interrupted runs and apply retention, then exit
"""

import argparse
import json
import logging
import signal
import sys
import time
from dataclasses import asdict
from typing import Optional

from dotenv import load_dotenv

from src.infra.config import HubSettings
from src.infra.logging_config import setup_logging
from src.scheduler.errors import AutomationError
from src.scheduler.service import AutomationService


# Graceful shutdown support
shutdown_requested = False

logger = logging.getLogger("automation_hub")


def signal_handler(signum, frame):
    """SIGINT / SIGTERM handler - stop after in-flight items reach a boundary."""
    global shutdown_requested
    signal_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
    logger.info(f"{signal_name} received - shutting down")
    shutdown_requested = True


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        description="Automation hub - scheduled and webhook-triggered workflows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Headless scheduler using the workflows from HUB_BOOTSTRAP
  python main.py run

  # HTTP API with webhooks on port 8000
  python main.py serve --port 8000

  # Fire a single workflow once
  python main.py trigger github-notifications
        """,
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default="logs",
        help="Directory for daily log files",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run the scheduler until interrupted")

    serve = subparsers.add_parser("serve", help="Run the HTTP API server")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
    serve.add_argument("--port", type=int, default=8000, help="Bind port")

    trigger = subparsers.add_parser("trigger", help="Run one workflow once")
    trigger.add_argument("workflow_id", type=str, help="Workflow to run")

    subparsers.add_parser("recover", help="Run crash recovery and retention only")

    return parser.parse_args(argv)


def run_headless(service: AutomationService) -> None:
    """Run the scheduler until a shutdown signal arrives."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    recovery_stats = service.start()
    logger.info(f"Recovery: {recovery_stats}")

    start_time = time.time()
    try:
        while not shutdown_requested:
            time.sleep(1)
    finally:
        abandoned = service.stop()
        logger.info(
            f"Ran for {time.time() - start_time:.1f}s; "
            f"{abandoned} run(s) abandoned at shutdown"
        )


def run_once(service: AutomationService, workflow_id: str) -> int:
    """Start the scheduler, fire one workflow, print its run and stop."""
    service.start()
    try:
        run = service.trigger(workflow_id, wait=True)
    finally:
        service.stop()

    record = asdict(run)
    record["trigger"] = run.trigger.value
    record["outcome"] = run.outcome.value if run.outcome else None
    print(json.dumps(record, indent=2))
    return 0 if run.outcome and run.outcome.value != "error" else 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    load_dotenv()
    args = parse_args(argv)

    settings = HubSettings.from_env(dotenv=False)
    setup_logging(settings.log_level, log_dir=args.log_dir)

    if args.command == "serve":
        import uvicorn
        uvicorn.run("src.api.main:app", host=args.host, port=args.port)
        return 0

    try:
        service = AutomationService.create(settings)

        if args.command == "run":
            run_headless(service)
            return 0
        if args.command == "trigger":
            return run_once(service, args.workflow_id)
        if args.command == "recover":
            stats = service.recovery_manager.recover_on_startup()
            print(json.dumps(stats, indent=2))
            return 0 if not stats["errors"] else 1

    except AutomationError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    return 2


if __name__ == "__main__":
    sys.exit(main())
