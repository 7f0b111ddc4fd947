"""Main entry point for the GitOps Promotions Operator.

Wires the file-backed stores, credential resolver, Environment reconciler
and Promotion engine into one Controller and runs it until SIGTERM/SIGINT.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .controller import Controller
from .credentials import CredentialResolver, HostKeyPolicy
from .engine import PromotionEngine
from .environment import EnvironmentReconciler
from .store import FileResourceStore, FileSecretStore

# LogRecord attributes that are not user supplied extra fields
_RESERVED_RECORD_FIELDS = frozenset(
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
            if key not in _RESERVED_RECORD_FIELDS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_output: bool = True, level: int = logging.INFO) -> None:
    """Configure logging: JSON on stdout for production, plain text otherwise."""
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from GitPython and the HTTP client
    logging.getLogger("git").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_components(
    config: Config,
) -> tuple[FileResourceStore, EnvironmentReconciler, PromotionEngine]:
    """Construct the store and both reconcilers from configuration."""
    store = FileResourceStore(config.manifests_dir, config.status_dir)
    resolver = CredentialResolver(
        FileSecretStore(config.secrets_dir),
        HostKeyPolicy(mode=config.host_key_mode, known_hosts_file=config.known_hosts_file),
    )
    environments = EnvironmentReconciler(config, store, resolver)
    engine = PromotionEngine(config, store, resolver)
    return store, environments, engine


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(json_output=config.enable_json_logging)
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting GitOps Promotions Operator",
        extra={
            "manifests_dir": str(config.manifests_dir),
            "status_dir": str(config.status_dir),
            "namespace": config.namespace or "*",
            "host_key_policy": config.host_key_mode.value,
            "dry_run": config.dry_run,
        },
    )

    store, environments, engine = build_components(config)
    controller = Controller(config, store, engine, environments)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        controller.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await controller.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
