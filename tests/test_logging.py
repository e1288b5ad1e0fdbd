# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for aidev/logging.py."""

import logging

from aidev.logging import (
    CLI_FORMAT,
    DEBUG_FORMAT,
    SecretFilter,
    configure_logging,
    redact_command,
)


def _record(msg: str, *args: object) -> logging.LogRecord:
    return logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=args,
        exc_info=None,
    )


class TestSecretFilter:
    """Tests for SecretFilter."""

    def test_no_secrets_passes_through(self) -> None:
        """Records are untouched when nothing is registered."""
        record = _record("token is %s", "abc")
        assert SecretFilter().filter(record) is True
        assert record.getMessage() == "token is abc"

    def test_redacts_message(self) -> None:
        """Registered secret in the message is replaced."""
        SecretFilter.register_secret("sk-ant-123")
        record = _record("key=sk-ant-123 done")
        SecretFilter().filter(record)
        assert record.getMessage() == "key=[REDACTED] done"

    def test_redacts_args(self) -> None:
        """Registered secret in string args is replaced."""
        SecretFilter.register_secret("ghp_secret")
        record = _record("token %s count %d", "ghp_secret", 3)
        SecretFilter().filter(record)
        assert record.getMessage() == "token [REDACTED] count 3"

    def test_longest_secret_first(self) -> None:
        """Overlapping secrets are fully masked."""
        SecretFilter.register_secret("abc")
        SecretFilter.register_secret("abcdef")
        record = _record("value abcdef")
        SecretFilter().filter(record)
        assert record.getMessage() == "value [REDACTED]"

    def test_empty_secret_ignored(self) -> None:
        """Registering an empty string does not redact everything."""
        SecretFilter.register_secret("")
        record = _record("hello")
        SecretFilter().filter(record)
        assert record.getMessage() == "hello"

    def test_clear_secrets(self) -> None:
        """Cleared secrets are no longer redacted."""
        SecretFilter.register_secret("s3cret")
        SecretFilter.clear_secrets()
        record = _record("s3cret")
        SecretFilter().filter(record)
        assert record.getMessage() == "s3cret"

    def test_regex_characters_escaped(self) -> None:
        """Secrets containing regex metacharacters match literally."""
        SecretFilter.register_secret("a.b*c")
        record = _record("x a.b*c axbbc")
        SecretFilter().filter(record)
        assert record.getMessage() == "x [REDACTED] axbbc"


class TestRedactCommand:
    """Tests for redact_command."""

    def test_masks_env_values(self) -> None:
        """Values after --env and -e are masked, names kept."""
        cmd = [
            "docker",
            "run",
            "--env",
            "ANTHROPIC_API_KEY=sk-1",
            "-e",
            "TZ=UTC",
            "image",
        ]
        assert redact_command(cmd) == (
            "docker run --env ANTHROPIC_API_KEY=*** -e TZ=*** image"
        )

    def test_other_args_untouched(self) -> None:
        """Arguments containing '=' elsewhere are not masked."""
        cmd = ["docker", "build", "--build-arg", "TZ=UTC", "."]
        assert redact_command(cmd) == "docker build --build-arg TZ=UTC ."

    def test_value_keeps_later_equals(self) -> None:
        """Only the first '=' separates name from value."""
        assert redact_command(["--env", "A=b=c"]) == "--env A=***"


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_default_level_and_format(self) -> None:
        """Non-debug uses INFO and the terse format."""
        configure_logging()
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1
        handler = root.handlers[0]
        assert handler.formatter is not None
        assert handler.formatter._fmt == CLI_FORMAT
        assert any(isinstance(f, SecretFilter) for f in handler.filters)

    def test_debug(self) -> None:
        """Debug uses DEBUG and the timestamped format."""
        configure_logging(debug=True)
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert root.handlers[0].formatter._fmt == DEBUG_FORMAT

    def test_replaces_handlers(self) -> None:
        """Repeated calls do not stack handlers."""
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1
