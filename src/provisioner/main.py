"""Process wiring: logging, provider selection and signal-aware runs.

The CLI calls into this module so that commands stay thin:
- setup_logging() installs the JSON or text formatter on stderr
- create_reconciler() builds State Store, policy and provider from Config
- run_cancellable() runs a coroutine that stops dispatching new provider
  calls on SIGINT/SIGTERM
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from .config import Config, LogFormat, ProviderType
from .executor import ExecutorSettings
from .local_provider import LocalProvider
from .policy import load_policy
from .provider import Provider
from .reconciler import Reconciler
from .state import FileStateBackend, StateStore

T = TypeVar("T")

EXIT_FAILURE = 1
EXIT_SECURITY_VIOLATION = 2
EXIT_CANCELLED = 130

# LogRecord attributes that are not caller-supplied extra fields
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
        log_data: dict[str, Any] = {
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


class TextFormatter(logging.Formatter):
    """Human-readable lines with extra fields appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_FIELDS and key != "asctime"
        ]
        return f"{line} {' '.join(fields)}" if fields else line


def setup_logging(log_format: LogFormat = LogFormat.TEXT, level: str = "INFO") -> None:
    """Configure logging to stderr; stdout is reserved for command output."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if log_format == LogFormat.JSON else TextFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def create_provider(config: Config) -> Provider:
    """Instantiate the provider selected by configuration.

    Raises:
        SecretlessViolationError: If the azure provider finds secrets in the environment.
    """
    if config.provider == ProviderType.AZURE:
        # Imported lazily so local runs do not load the Azure SDK
        from .azure_provider import AzureResourceProvider
        from .security import get_credential

        assert config.azure_subscription_id is not None
        credential = get_credential(config.azure_credential, config.azure_client_id)
        return AzureResourceProvider(config.azure_subscription_id, credential=credential)
    return LocalProvider(config.local_provider_dir)


def create_reconciler(config: Config, provider: Provider | None = None) -> Reconciler:
    """Wire State Store, policy and provider into a Reconciler.

    Raises:
        PolicyLoadError: If the replacement policy is invalid.
        SecretlessViolationError: See create_provider().
    """
    return Reconciler(
        provider=provider or create_provider(config),
        store=StateStore(FileStateBackend(config.state_dir)),
        policy=load_policy(config.policy_file),
        settings=ExecutorSettings.from_config(config),
    )


def run_cancellable(work: Callable[[asyncio.Event], Awaitable[T]]) -> T:
    """Run `work(cancel_event)` with SIGINT/SIGTERM setting the event.

    A first signal stops new provider calls and lets in-flight ones finish;
    their results are still recorded.
    """
    logger = logging.getLogger(__name__)

    async def runner() -> T:
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.warning(
                "Received signal, finishing in-flight operations",
                extra={"signal": sig.name},
            )
            cancel_event.set()

        installed: list[signal.Signals] = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Not available off the main thread or on some platforms
                pass
        try:
            return await work(cancel_event)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    return asyncio.run(runner())


def run() -> None:
    """Entry point for the provisioner console script."""
    from .cli import cli

    cli()


if __name__ == "__main__":
    run()
