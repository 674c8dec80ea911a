"""Main entry point for tenantsync.

Runs one reconciliation pass of a desired-state file against a tenant,
configured entirely from the environment:

    TENANT_DOMAIN=acme.example-auth.com TENANT_ACCESS_TOKEN=... \\
    TENANTSYNC_INPUT=tenant.yaml tenantsync-operator

Exit codes: 0 success, 1 configuration/load/reconciliation failure,
2 desired state failed validation.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
import sys
from datetime import UTC, datetime
from pathlib import Path

import httpx

from .catalog import build_catalog
from .client import ManagementApiClient
from .config import Config, ConfigurationError
from .executor import RateLimitedExecutor
from .fetcher import PagedFetcher
from .provenance import get_provenance_logger
from .reconciler import Reconciler, RunReport
from .spec_loader import SpecLoadError, load_desired_state

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION_FAILURE = 2

_RESERVED_RECORD_KEYS = frozenset(
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
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int | None = None) -> None:
    """Configure structured logging with JSON output.

    TENANTSYNC_DEBUG=true switches the default level to DEBUG.
    """
    if level is None:
        debug = os.environ.get("TENANTSYNC_DEBUG", "").lower() in ("true", "1", "yes")
        level = logging.DEBUG if debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from the HTTP stack
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def execute(
    config: Config,
    assets_path: Path,
    transport: httpx.AsyncBaseTransport | None = None,
) -> RunReport:
    """Load the desired state and reconcile every resource type.

    Raises:
        SpecLoadError: If the desired state file cannot be loaded.
        ConfigurationError: If no access token is configured.
    """
    if not config.access_token:
        raise ConfigurationError("TENANT_ACCESS_TOKEN is required to reach the management API")

    state = load_desired_state(assets_path)
    if state.excluded_names:
        config = dataclasses.replace(
            config, excluded_names={**state.excluded_names, **config.excluded_names}
        )

    provenance_logger = get_provenance_logger()
    provenance = provenance_logger.create_provenance(config, assets_path)

    try:
        async with ManagementApiClient.from_config(config, transport=transport) as client:
            reconciler = Reconciler(
                executor=RateLimitedExecutor.from_config(config),
                policy=config.as_policy(),
                fetcher=PagedFetcher(feature_codes=config.feature_disabled_error_codes),
            )
            report = await reconciler.reconcile_all(state.assets, build_catalog(client))
    except Exception as e:
        provenance.error = f"{type(e).__name__}: {e}"
        provenance_logger.log_provenance(provenance)
        raise

    provenance_logger.record_report(provenance, report)
    provenance_logger.log_provenance(provenance)
    return report


def exit_code_for(report: RunReport) -> int:
    """Map a run report to the process exit code."""
    if any(result.validation_failed for result in report.results):
        return EXIT_VALIDATION_FAILURE
    if not report.success:
        return EXIT_FAILURE
    return EXIT_OK


async def run_sync(
    config: Config,
    assets_path: Path,
    transport: httpx.AsyncBaseTransport | None = None,
) -> int:
    """Run one reconciliation pass and return the exit code."""
    logger.info(
        "Starting tenant sync",
        extra={
            "domain": config.domain,
            "input": str(assets_path),
            "dry_run": config.dry_run,
            "allow_delete": config.allow_delete,
        },
    )

    try:
        report = await execute(config, assets_path, transport=transport)
    except (ConfigurationError, SpecLoadError) as e:
        logger.error("Failed to start sync", extra={"error": str(e)})
        return EXIT_FAILURE
    except Exception as e:
        logger.exception("Sync failed unexpectedly", extra={"error": str(e)})
        return EXIT_FAILURE

    logger.info("Sync finished", extra={"success": report.success, "totals": report.totals()})
    return exit_code_for(report)


async def main() -> int:
    """Run from environment configuration."""
    setup_logging()

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    assets_path = os.environ.get("TENANTSYNC_INPUT", "")
    if not assets_path:
        logger.error("Configuration error", extra={"error": "TENANTSYNC_INPUT is required"})
        return EXIT_FAILURE

    return await run_sync(config, Path(assets_path))


def run() -> None:
    """Entry point for the operator script."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
