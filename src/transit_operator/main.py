"""Main entry point for the transit topology operator.

One run:
1. Load configuration from the environment
2. Load and validate the declaration file, compile the topology
3. Build and schedule the dependency graph (fails before any remote call)
4. Apply the plan through the EC2 provider, recording state

Exit codes: 0 when every node applied, 1 on configuration, load or apply
failures, 2 when the declarations do not form a valid graph.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .aws_provider import Ec2Provider
from .config import Config, ConfigurationError
from .dependency import GraphError, build_graph
from .reconciler import Reconciler
from .scheduler import schedule
from .spec_loader import SpecLoadError, load_declarations
from .state import JsonFileStateStore, MemoryStateStore, StateStoreError

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_GRAPH_ERROR = 2

# LogRecord attributes that are not structured context
RESERVED_LOG_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in RESERVED_LOG_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def main() -> int:
    """Run one reconciliation.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    logger.info(
        "Starting transit operator",
        extra={
            "spec_file": str(config.spec_file),
            "state_file": str(config.state_file),
            "region": config.region,
            "dry_run": config.dry_run,
        },
    )

    try:
        declarations = load_declarations(config.spec_file, config.region)
        plan = schedule(build_graph(declarations))
    except SpecLoadError as e:
        logger.error("Declaration loading failed", extra={"error": str(e)})
        return EXIT_FAILURE
    except GraphError as e:
        logger.error(
            "Invalid dependency graph",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_GRAPH_ERROR

    try:
        # A dry run never writes the state document
        state = (
            MemoryStateStore(JsonFileStateStore(config.state_file).snapshot())
            if config.dry_run
            else JsonFileStateStore(config.state_file)
        )
    except StateStoreError as e:
        logger.error("Failed to load state", extra={"error": str(e)})
        return EXIT_FAILURE

    reconciler = Reconciler(config)
    provider = Ec2Provider(config.region)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        result = await reconciler.apply(plan, provider, state, spec_file=config.spec_file)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return EXIT_FAILURE

    if config.dry_run:
        for change in result.planned_changes:
            logger.info(
                "Planned change",
                extra={
                    "resource": change.name,
                    "kind": change.kind,
                    "action": change.action.value,
                    "reason": change.reason,
                },
            )

    logger.info("Operator stopped", extra={"success": result.success})
    return EXIT_SUCCESS if result.success else EXIT_FAILURE


def run() -> None:
    """Entry point for the operator."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
