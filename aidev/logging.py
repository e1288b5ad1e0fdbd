# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Logging configuration with credential redaction.

The launcher passes host credentials (API keys, GitHub tokens) into
containers as environment variables.  Those values must never reach the
terminal or a log file, so every value is registered with
``SecretFilter`` and runtime commands are logged through
``redact_command()``.

Usage:
    # In the CLI entry point
    from aidev.logging import configure_logging
    configure_logging(debug=args.debug)

    # In library modules
    import logging
    logger = logging.getLogger(__name__)
    logger.info("Building image %s", tag)
"""

import logging
import re
from collections.abc import Sequence
from typing import ClassVar


#: Terse format for normal interactive use.
CLI_FORMAT = "→ %(message)s"

#: Full format used with ``--debug``.
DEBUG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class SecretFilter(logging.Filter):
    """Logging filter that redacts registered secrets from log output.

    Secrets are registered at runtime with ``register_secret()``.  Any
    registered secret appearing in a log message or its arguments is
    replaced with ``[REDACTED]``.
    """

    _secrets: ClassVar[set[str]] = set()
    _pattern: ClassVar[re.Pattern[str] | None] = None

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact registered secrets in *record*; never suppresses it."""
        if self._pattern is not None:
            record.msg = self._pattern.sub("[REDACTED]", str(record.msg))
            if record.args:
                record.args = tuple(
                    self._pattern.sub("[REDACTED]", str(arg))
                    if isinstance(arg, str)
                    else arg
                    for arg in record.args
                )
        return True

    @classmethod
    def register_secret(cls, secret: str) -> None:
        """Register a secret to be redacted from all log output.

        Args:
            secret: The secret string to redact. Empty strings are ignored.
        """
        if secret:
            cls._secrets.add(secret)
            cls._rebuild_pattern()

    @classmethod
    def clear_secrets(cls) -> None:
        """Clear all registered secrets. Primarily for testing."""
        cls._secrets.clear()
        cls._pattern = None

    @classmethod
    def _rebuild_pattern(cls) -> None:
        if cls._secrets:
            # Longest first so overlapping secrets are fully masked.
            ordered = sorted(cls._secrets, key=len, reverse=True)
            escaped = [re.escape(s) for s in ordered]
            cls._pattern = re.compile("|".join(escaped))
        else:
            cls._pattern = None


def redact_command(cmd: Sequence[str]) -> str:
    """Render a runtime command for logging with env values masked.

    Every ``-e NAME=value`` / ``--env NAME=value`` pair is rendered as
    ``NAME=***`` regardless of whether the value is a registered secret.

    Args:
        cmd: Command argument list.

    Returns:
        Space-joined command string safe to log.
    """
    redacted: list[str] = []
    mask_next = False
    for arg in cmd:
        if mask_next and "=" in arg:
            redacted.append(f"{arg.split('=', 1)[0]}=***")
        else:
            redacted.append(arg)
        mask_next = arg in ("-e", "--env")
    return " ".join(redacted)


def configure_logging(debug: bool = False) -> None:
    """Configure the root logger for the launcher.

    Args:
        debug: Use DEBUG level and the full timestamped format.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(DEBUG_FORMAT if debug else CLI_FORMAT)
    )
    handler.addFilter(SecretFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)

    # Remove existing handlers to avoid duplicates
    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    root_logger.addHandler(handler)
