"""Main entry point for the VM operator.

Wires the OpenStack client, template engine, link resolver and server into
a controller watching VirtualMachine objects, then runs until signalled.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC

from kubernetes import client
from kubernetes.config import ConfigException

from .config import Config, ConfigurationError
from .kube import KubeLinkResolver, ServiceSyncer, load_k8s_config
from .provider import OpenStackClient, ProviderError
from .reconciler import VirtualMachineController
from .server import Server
from .templates import TemplateEngine


def setup_logging() -> None:
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
                if key not in _STANDARD_RECORD_ATTRS:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Reduce noise from HTTP and cluster clients
    for name in ("httpx", "httpcore", "kubernetes", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


_STANDARD_RECORD_ATTRS = frozenset(
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


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting VM operator",
        extra={
            "auth_url": config.auth_url,
            "region": config.region,
            "namespace": config.namespace or "*",
            "poll_interval_seconds": config.poll_interval_seconds,
        },
    )

    try:
        load_k8s_config()
    except ConfigException as e:
        logger.error("Kubernetes configuration unavailable", extra={"error": str(e)})
        return 1

    provider = OpenStackClient(config)
    try:
        provider.reauthenticate()
    except ProviderError as e:
        logger.error(
            "OpenStack authentication failed",
            extra={"error": str(e), "status_code": e.status_code},
        )
        provider.close()
        return 1

    resolver = KubeLinkResolver(client.CoreV1Api(), client.AppsV1Api())
    syncer = ServiceSyncer(resolver)
    server = Server(config, provider, TemplateEngine(config.templates_dir), resolver, syncer)
    controller = VirtualMachineController(config, server)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        controller.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    server.start()
    try:
        await controller.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        server.stop()
        provider.close()

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
