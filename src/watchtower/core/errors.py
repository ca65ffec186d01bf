"""
Exception hierarchy for watchtower.

Exception Hierarchy:
    WatchtowerError (base)
    ├── GitError (git subprocess failures, classified)
    ├── ConfigError (missing/invalid/unparseable configuration)
    ├── ServerError (dev-server process failures)
    └── ValidationError (unsafe user or ref input)

ErrorHandler turns any of these into an operator-facing message and a
severity so nothing reaches the dashboard as a bare traceback.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from watchtower.core.git.classifier import USER_MESSAGES, ErrorCategory, classify

logger = logging.getLogger(__name__)

Severity = Literal["error", "warning", "info"]


class WatchtowerError(Exception):
    """
    Base exception for watchtower.

    Attributes:
        message: Human-readable error message
        code: Stable code for programmatic handling
        details: Additional structured context
        timestamp: When the error was created (UTC)
    """

    default_code = "APP_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        return self.message

    def to_user_message(self) -> str:
        """Message suitable for the dashboard."""
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging."""
        return {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class GitError(WatchtowerError):
    """
    A failed git invocation.

    The category is fixed at construction: timeouts and missing binaries are
    categorised by the command layer, everything else by the text classifier.

    Attributes:
        command: The command text that failed (never its output)
        stderr: Captured stderr, if any
        category: ErrorCategory for recovery decisions
    """

    default_code = "GIT_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        command: str | None = None,
        stderr: str | None = None,
        category: ErrorCategory | None = None,
    ) -> None:
        super().__init__(message, code, details)
        self.command = command
        self.stderr = stderr or ""
        if category is None:
            if self.code == "GIT_TIMEOUT":
                category = ErrorCategory.TIMEOUT
            elif self.code == "GIT_NOT_FOUND":
                category = ErrorCategory.NOT_FOUND
            elif self.code == "GIT_DIRTY_WORKDIR":
                category = ErrorCategory.DIRTY_WORKDIR
            else:
                category = classify(message, self.stderr)
        self.category = category

    def is_network_error(self) -> bool:
        return self.category is ErrorCategory.NETWORK

    def is_auth_error(self) -> bool:
        return self.category is ErrorCategory.AUTH

    def is_merge_conflict(self) -> bool:
        return self.category is ErrorCategory.MERGE_CONFLICT

    def is_dirty_workdir(self) -> bool:
        return self.category is ErrorCategory.DIRTY_WORKDIR

    def to_user_message(self) -> str:
        return USER_MESSAGES.get(self.category, self.message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["command"] = self.command
        data["category"] = self.category.value
        return data

    @classmethod
    def from_process_failure(
        cls,
        command: str,
        stderr: str = "",
        stdout: str = "",
        exit_code: int | None = None,
    ) -> GitError:
        """
        Build a GitError from a non-zero git exit.

        Args:
            command: Command text that was run
            stderr: Captured stderr
            stdout: Captured stdout; pull reports conflicts there, so it is
                classified alongside stderr
            exit_code: Process exit code

        Returns:
            Classified GitError
        """
        message = stderr.strip() or stdout.strip() or f"git exited with code {exit_code}"
        return cls(
            message,
            "GIT_ERROR",
            {"exit_code": exit_code},
            command=command,
            stderr="\n".join(part for part in (stderr, stdout) if part),
        )


class ConfigError(WatchtowerError):
    """Configuration could not be found, read, or validated."""

    default_code = "CONFIG_ERROR"

    @classmethod
    def missing(cls, config_path: str) -> ConfigError:
        return cls(
            f"Configuration file not found: {config_path}",
            "CONFIG_NOT_FOUND",
            {"path": config_path},
        )

    @classmethod
    def invalid(cls, reason: str, details: dict[str, Any] | None = None) -> ConfigError:
        return cls(f"Invalid configuration: {reason}", "CONFIG_INVALID", details)

    @classmethod
    def parse_error(cls, error: Exception) -> ConfigError:
        return cls(
            f"Failed to parse configuration: {error}",
            "CONFIG_PARSE_ERROR",
            {"original_error": str(error)},
        )


class ServerError(WatchtowerError):
    """Dev-server process failures."""

    default_code = "SERVER_ERROR"

    @classmethod
    def port_in_use(cls, port: int) -> ServerError:
        return cls(f"Port {port} is already in use", "PORT_IN_USE", {"port": port})

    @classmethod
    def process_crashed(cls, command: str, exit_code: int) -> ServerError:
        return cls(
            f"Server process crashed with exit code {exit_code}",
            "PROCESS_CRASHED",
            {"command": command, "exit_code": exit_code},
        )

    @classmethod
    def start_failed(cls, command: str, reason: str) -> ServerError:
        return cls(
            f"Failed to start server: {reason}",
            "START_FAILED",
            {"command": command, "reason": reason},
        )


class ValidationError(WatchtowerError):
    """
    Input failed a safety check.

    Attributes:
        field: Name of the offending field
        value: The rejected value
    """

    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str, value: Any) -> None:
        super().__init__(message, "VALIDATION_ERROR", {"field": field, "value": value})
        self.field = field
        self.value = value

    @classmethod
    def invalid_branch_name(cls, name: str) -> ValidationError:
        return cls(f'Invalid branch name: "{name}"', "branch_name", name)

    @classmethod
    def invalid_port(cls, port: Any) -> ValidationError:
        return cls(
            f"Invalid port: {port}. Must be a number between 1 and 65535",
            "port",
            port,
        )


@dataclass
class HandledError:
    """Operator-facing rendition of an error."""

    message: str
    severity: Severity


class ErrorHandler:
    """
    Map exceptions to operator-facing messages.

    Example:
        >>> handler = ErrorHandler()
        >>> handled = handler.handle(GitError("Could not resolve host"), "poll")
        >>> handled.severity
        'warning'
    """

    def __init__(
        self,
        debug: bool = False,
        on_error: Callable[[BaseException, str], None] | None = None,
    ) -> None:
        self.debug = debug
        self.on_error = on_error

    def handle(self, error: BaseException, context: str = "unknown") -> HandledError:
        if self.debug:
            logger.debug(f"[{context}] {error!r}", exc_info=error)

        if self.on_error is not None:
            self.on_error(error, context)

        if isinstance(error, WatchtowerError):
            return HandledError(error.to_user_message(), self.get_severity(error))

        return HandledError(str(error) or "An unexpected error occurred", "error")

    def get_severity(self, error: WatchtowerError) -> Severity:
        if isinstance(error, GitError) and error.is_network_error():
            return "warning"
        if isinstance(error, ConfigError):
            return "warning"
        return "error"

    def is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, GitError) and error.is_network_error()


__all__ = [
    "ConfigError",
    "ErrorHandler",
    "GitError",
    "HandledError",
    "ServerError",
    "ValidationError",
    "WatchtowerError",
]
