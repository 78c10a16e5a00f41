"""Main entry point for the VPS operator.

One run reconciles every desired configuration in SPECS_DIR against
its stored state. Servers are independent, so their reconciliations
run concurrently; each owns its own plan and change-set.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from datetime import UTC, datetime

from .client import ComputeAPI, VpsClient
from .config import Config, ConfigurationError
from .orchestrator import ReconcileRequest, ReconcileResult, ServerOrchestrator
from .planner import Operation
from .spec_loader import SpecLoadError, load_all_specs
from .state import StateStore, StateStoreError

logger = logging.getLogger(__name__)

# LogRecord attributes that are not structured context
_RESERVED_ATTRS = frozenset(
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

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the HTTP stack
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def reconcile_all(
    config: Config,
    api: ComputeAPI,
    orchestrator: ServerOrchestrator | None = None,
) -> list[ReconcileResult]:
    """Reconcile every configured server once.

    Servers without stored state are created, the rest are updated.
    State is saved whenever a request returns a fresh observed state,
    including failed requests after which the server was re-read.

    Raises:
        SpecLoadError: If any configuration is invalid.
        StateStoreError: If stored state cannot be read.
    """
    specs = load_all_specs(config.specs_dir)
    store = StateStore(config.state_dir)
    orchestrator = orchestrator or ServerOrchestrator(api, config)

    names = list(specs)
    requests = []
    for name in names:
        observed = store.load(name)
        requests.append(
            ReconcileRequest(
                operation=Operation.CREATE if observed is None else Operation.UPDATE,
                desired=specs[name],
                observed=observed,
            )
        )

    orphans = sorted(set(store.names()) - set(names))
    if orphans:
        logger.warning(
            "Stored state without configuration, use destroy to remove",
            extra={"servers": orphans},
        )

    results = await asyncio.gather(*(orchestrator.reconcile(r) for r in requests))

    for name, result in zip(names, results, strict=True):
        if result.applied and result.state is not None:
            store.save(name, result.state)

    failed = [name for name, result in zip(names, results, strict=True) if not result.success]
    logger.info(
        "Reconciliation run finished",
        extra={"servers": len(names), "failed": failed, "dry_run": config.dry_run},
    )
    return list(results)


async def main() -> int:
    """Run one reconciliation pass.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    token = os.environ.get("VPS_API_TOKEN", "")
    if not token:
        logger.error("Configuration error", extra={"error": "VPS_API_TOKEN is required"})
        return 1

    logger.info(
        "Starting VPS operator",
        extra={
            "api_endpoint": config.api_endpoint,
            "project_id": config.project_id,
            "specs_dir": str(config.specs_dir),
            "dry_run": config.dry_run,
        },
    )

    client = VpsClient(config.api_endpoint, config.project_id, token)
    try:
        results = await reconcile_all(config, client)
    except (SpecLoadError, StateStoreError) as e:
        logger.error("Failed to load configuration or state", extra={"error": str(e)})
        return 1
    finally:
        client.close()

    return 0 if all(r.success for r in results) else 1


def run() -> None:
    """Entry point for the operator."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
