"""Error taxonomy and user-facing error display for the Kantine device client.

Failures are split into the categories the enrollment core reacts to
differently: validation of server payloads, authorization (token revoked or
invalid, handled only by the lifecycle state machine), transient network
problems, and duplicate submission of an enrollment token. Capacity
truncation is not an error; see ``merge.MergeResult``.
"""

import sys
from typing import Any, Dict, List, Optional, Self

from rich.console import Console
from rich.panel import Panel

console = Console(stderr=True)


class KantineError(Exception):
    """Base exception class for Kantine device errors."""

    def __init__(self: Self, message: str, suggestions: Optional[List[str]] = None) -> None:
        """Initialize error.

        Args:
            message: The error message to display.
            suggestions: Optional list of recovery suggestions.
        """
        super().__init__(message)
        self.message = message
        self.suggestions = suggestions or []


class ConfigurationError(KantineError):
    """Raised when there are configuration issues."""
    pass


class APIError(KantineError):
    """Base class for failures talking to the backend."""

    def __init__(
        self: Self,
        message: str,
        status_code: Optional[int] = None,
        suggestions: Optional[List[str]] = None
    ) -> None:
        super().__init__(message, suggestions)
        self.status_code = status_code


class ResponseValidationError(APIError):
    """A required field was missing or malformed in a server response."""
    pass


class TransientAPIError(APIError):
    """Timeouts, connectivity loss, 5xx and unstructured 401 responses.

    Always retryable and never a reason to touch authorization state.
    """
    pass


class AuthorizationError(APIError):
    """The backend explicitly rejected the device token for a tenant."""

    error_type = "unauthorized"

    def __init__(
        self: Self,
        message: str,
        reason: Optional[str] = None,
        tenant_slug: Optional[str] = None
    ) -> None:
        super().__init__(
            message,
            status_code=401,
            suggestions=[
                "Scan the club QR code again to re-enroll this device",
                "Ask your team manager for a new enrollment link",
            ]
        )
        self.reason = reason
        self.tenant_slug = tenant_slug


class TokenRevokedError(AuthorizationError):
    """Backend reported ``{"error": "token_revoked"}``."""

    error_type = "token_revoked"


class InvalidTokenError(AuthorizationError):
    """Backend reported ``{"error": "invalid_token"}``."""

    error_type = "invalid_token"


class DuplicateSubmissionError(KantineError):
    """The same enrollment token is already being processed."""

    def __init__(self: Self, token_prefix: str) -> None:
        super().__init__(
            f"Enrollment {token_prefix}... is already in progress",
            ["Wait for the running enrollment to finish"]
        )


class ErrorHandler:
    """Handles and displays errors with recovery suggestions."""

    def __init__(self: Self) -> None:
        """Initialize the error handler."""
        self.error_patterns: Dict[str, Dict[str, Any]] = {
            "connection_refused": {
                "keywords": ["connection refused", "connection error", "timeout", "timed out"],
                "suggestions": [
                    "Check your internet connection",
                    "Verify the backend URL: kantine config",
                    "Cached data is still shown while offline; try again later",
                ]
            },
            "token_revoked": {
                "keywords": ["token_revoked", "invalid_token", "revoked", "season ended"],
                "suggestions": [
                    "The club ended the season or revoked this device",
                    "Remove the club with: kantine remove-tenant <SLUG>",
                    "Re-enroll with a fresh link from the club",
                ]
            },
            "authentication_failed": {
                "keywords": ["401", "unauthorized", "no auth token"],
                "suggestions": [
                    "Enroll this device first: kantine enroll <TOKEN>",
                    "Check that at least one club is still active: kantine status",
                ]
            },
            "validation_failed": {
                "keywords": ["missing tenant_slug", "missing tenant_name", "invalid response"],
                "suggestions": [
                    "The server sent an incomplete response; try again later",
                    "Report the problem to the club if it persists",
                ]
            },
            "server_error": {
                "keywords": ["500", "502", "503", "504", "server error"],
                "suggestions": [
                    "The backend is temporarily unavailable",
                    "Try again in a few minutes",
                ]
            },
            "storage_error": {
                "keywords": ["failed to load model", "failed to save model", "decrypt"],
                "suggestions": [
                    "Check permissions of the ~/.kantine directory",
                    "Make sure KANTINE_ENCRYPTION_KEY matches the key used before",
                ]
            },
        }

    def identify_error_type(self: Self, error_message: str) -> Optional[str]:
        """Identify the type of error based on the message.

        Args:
            error_message: The error message to analyze.

        Returns:
            The error type key if identified, None otherwise.
        """
        error_lower = error_message.lower()

        for error_type, pattern_data in self.error_patterns.items():
            for keyword in pattern_data["keywords"]:
                if keyword in error_lower:
                    return error_type

        return None

    def get_suggestions(self: Self, error_message: str) -> List[str]:
        """Get recovery suggestions for an error message."""
        error_type = self.identify_error_type(error_message)

        if error_type and error_type in self.error_patterns:
            return self.error_patterns[error_type]["suggestions"]

        return [
            "Check the current state: kantine status",
            "Run with --verbose for more details",
        ]

    def display_error(
        self: Self,
        error: Exception,
        context: Optional[str] = None,
        show_suggestions: bool = True
    ) -> None:
        """Display an error with formatting and suggestions.

        Args:
            error: The exception that occurred.
            context: Optional context about what was being attempted.
            show_suggestions: Whether to show recovery suggestions.
        """
        error_message = str(error)

        content = []

        if context:
            content.append(f"[bold]Context:[/bold] {context}")
            content.append("")

        content.append(f"[bold red]Error:[/bold red] {error_message}")

        if show_suggestions:
            if isinstance(error, KantineError) and error.suggestions:
                suggestions = error.suggestions
            else:
                suggestions = self.get_suggestions(error_message)

            if suggestions:
                content.append("")
                content.append("[bold blue]Suggested solutions:[/bold blue]")
                for i, suggestion in enumerate(suggestions, 1):
                    content.append(f"  {i}. {suggestion}")

        console.print(Panel(
            "\n".join(content),
            title="[bold red]Kantine Error[/bold red]",
            border_style="red",
            expand=False
        ))


def handle_exception(
    error: Exception,
    context: Optional[str] = None,
    exit_code: int = 1
) -> None:
    """Display ``error`` and terminate the CLI with ``exit_code``."""
    error_handler = ErrorHandler()
    error_handler.display_error(error, context)
    sys.exit(exit_code)
