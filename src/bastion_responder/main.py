"""Process entry point for the bastion responder.

Each invocation handles one webhook delivery (an Event Grid or Drasi
notification body) and exits. The hosting function or job runner pipes the
request body in:

    bastion-responder process payload.json
    cat payload.json | bastion-responder process -
    bastion-responder validate-config --registry-path role-actions.yaml

Exit codes:
    0  notification processed (including rejected, skipped and failed actions)
    1  configuration or input error
    2  security violation (credential secrets in the environment)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any

import click

from .config import DEFAULT_REGISTRY_PATH, MAX_PAYLOAD_SIZE_BYTES, Config, ConfigurationError
from .pipeline import BUILTIN_ACTIONS, RoleChangeResponder
from .registry import load_registry_file
from .security import SecretlessViolationError

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_SECURITY_VIOLATION = 2

# LogRecord attributes that are not structured extra fields
_RESERVED_LOG_ATTRS = frozenset(
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
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stderr.

    stdout is reserved for the processing results.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _read_payload(stream: IO[bytes]) -> Any:
    """Read and decode one webhook body.

    Raises:
        ValueError: If the body is too large, empty, or not JSON.
    """
    data = stream.read(MAX_PAYLOAD_SIZE_BYTES + 1)
    if len(data) > MAX_PAYLOAD_SIZE_BYTES:
        raise ValueError(f"Payload exceeds maximum size of {MAX_PAYLOAD_SIZE_BYTES} bytes")
    if not data.strip():
        raise ValueError("Payload is empty")
    try:
        return json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"Payload is not valid JSON: {e}") from e


async def process_payload(stream: IO[bytes]) -> int:
    """Build the responder from the environment and process one delivery.

    Returns:
        Exit code (0 once processed, non-zero on failure).
    """
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_ERROR

    try:
        payload = _read_payload(stream)
    except ValueError as e:
        logger.error("Invalid payload", extra={"error": str(e)})
        return EXIT_ERROR

    try:
        responder = RoleChangeResponder.from_config(config)
    except ConfigurationError as e:
        logger.error(
            "Failed to load role-action document",
            extra={"error": str(e), "registry_path": str(config.registry_path)},
        )
        return EXIT_ERROR
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION

    # LOG_LEVEL from the environment wins over the document's settings.logLevel
    level = config.log_level_value or logging.getLevelName(responder.registry.log_level)
    logging.getLogger().setLevel(level)

    logger.info(
        "Processing notification",
        extra={
            "subscription_id": config.subscription_id,
            "location": config.location,
            "dry_run": responder.dry_run,
        },
    )

    try:
        results = await responder.process(payload)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return EXIT_ERROR

    click.echo(json.dumps([result.to_dict() for result in results]))
    return EXIT_OK


@click.group()
@click.version_option(package_name="azure-bastion-responder")
def cli() -> None:
    """Bastion responder - provisions bastion hosts on VM login role changes."""
    setup_logging()


@cli.command()
@click.argument("payload", type=click.File("rb"), default="-")
def process(payload: IO[bytes]) -> None:
    """Process one notification body from PAYLOAD (a file, or - for stdin)."""
    sys.exit(asyncio.run(process_payload(payload)))


@cli.command("validate-config")
@click.option(
    "--registry-path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="REGISTRY_PATH",
    default=DEFAULT_REGISTRY_PATH,
    show_default=True,
    help="Role-action YAML document to validate",
)
def validate_config(registry_path: Path) -> None:
    """Validate the role-action document without contacting Azure."""
    try:
        registry = load_registry_file(registry_path, BUILTIN_ACTIONS)
    except ConfigurationError as e:
        click.echo(click.style(str(e), fg="red"), err=True)
        sys.exit(EXIT_ERROR)

    click.echo(click.style(f"{registry_path} is valid", fg="green"))
    for rule in registry.rules:
        click.echo(
            f"  {rule.display_name or rule.role_id}: "
            f"grant={list(rule.actions_on_grant)} revoke={list(rule.actions_on_revoke)}"
        )


def run() -> None:
    """Entry point for the responder CLI."""
    cli()


if __name__ == "__main__":
    run()
