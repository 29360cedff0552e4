"""Main entry point for the Atlas Organization Operator.

The operator reconciles Organization manifests against the organization API
and stores each organization's API key pair in AWS Secrets Manager. Root API
credentials are read from the secret named by the provider config; no key
material is taken from the environment.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC

from .config import Config, ConfigurationError
from .connector import Connector
from .reconciler import Reconciler
from .security import SecretRedactionFilter
from .spec_loader import SpecLoadError, load_provider_config
from .status_store import StatusStore

NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "httpx", "httpcore")


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

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
                if key not in (
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
                ):
                    log_data[key] = value

            # Add exception info if present
            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    handler.addFilter(SecretRedactionFilter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK and the HTTP stack
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_reconciler(config: Config) -> Reconciler:
    """Wire provider config, connector and status store into a driver.

    Raises:
        SpecLoadError: If the provider config cannot be loaded.
    """
    provider_config = load_provider_config(config.provider_config_path)
    connector = Connector(provider_config, config=config)
    return Reconciler(config, connector, StatusStore(config.state_dir))


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

    setup_logging(config.log_level, config.enable_json_logging)
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting Atlas Organization Operator",
        extra={
            "specs_dir": str(config.specs_dir),
            "state_dir": str(config.state_dir),
            "atlas_base_url": config.atlas_base_url,
            "secret_namespace": config.secret_namespace,
        },
    )

    try:
        reconciler = build_reconciler(config)
    except SpecLoadError as e:
        logger.error(
            "Failed to load provider config",
            extra={"error": str(e), "path": str(config.provider_config_path)},
        )
        return 1

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await reconciler.run()
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
