"""Error taxonomy and recovery suggestions for releasectl.

Every failure a deployment can hit is a ``ReleaseCtlError`` subclass so the
CLI can render it with contextual recovery suggestions and map it to an exit
status.
"""

import sys
from typing import Any, Dict, List, Optional, Self

from rich.console import Console
from rich.panel import Panel

console = Console(stderr=True)

EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_ROLLBACK_FAILED = 3
EXIT_INTERRUPTED = 130


class ReleaseCtlError(Exception):
    """Base exception class for releasectl errors."""

    exit_code = EXIT_FAILURE

    def __init__(self: Self, message: str, suggestions: Optional[List[str]] = None) -> None:
        """Initialize releasectl error.

        Args:
            message: The error message to display.
            suggestions: Optional list of recovery suggestions.
        """
        super().__init__(message)
        self.message = message
        self.suggestions = suggestions or []


class ConfigurationError(ReleaseCtlError):
    """Raised when there are configuration issues."""

    exit_code = EXIT_USAGE


class ValidationError(ReleaseCtlError):
    """Raised when operator input fails validation."""

    exit_code = EXIT_USAGE


class ChannelError(ReleaseCtlError):
    """Raised when the remote channel cannot be established (transient)."""
    pass


class AuthenticationFailure(ReleaseCtlError):
    """Raised when credentials are missing or rejected by the host."""
    pass


class CommandTimeout(ReleaseCtlError):
    """Raised when a remote command exceeds its timeout."""

    def __init__(self: Self, message: str, results: Optional[List[Any]] = None) -> None:
        super().__init__(message)
        self.results = results or []


class RemoteCommandError(ReleaseCtlError):
    """Raised when a remote command exits non-zero."""

    def __init__(self: Self, message: str, results: Optional[List[Any]] = None) -> None:
        super().__init__(message)
        self.results = results or []


class IntegrityMismatch(ReleaseCtlError):
    """Raised when the remote checksum differs from the local one."""

    def __init__(self: Self, expected: str, actual: str) -> None:
        super().__init__(f"Checksum mismatch: expected {expected}, got {actual or '<none>'}")
        self.expected = expected
        self.actual = actual


class TransportExhausted(ReleaseCtlError):
    """Raised when every delivery attempt has failed."""
    pass


class ReleaseConflict(ReleaseCtlError):
    """Raised when a release would overwrite the live slot."""
    pass


class Unhealthy(ReleaseCtlError):
    """Raised when a release fails health verification."""

    def __init__(self: Self, message: str, failed_probes: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.failed_probes = failed_probes or []


class RollbackFailed(ReleaseCtlError):
    """Raised when the restored release is unusable. Requires an operator."""

    exit_code = EXIT_ROLLBACK_FAILED


class DeploymentTimeout(ReleaseCtlError):
    """Raised when an attempt exceeds its overall deadline."""
    pass


class DeploymentCancelled(ReleaseCtlError):
    """Raised when an attempt is cancelled between steps."""
    pass


class DeploymentInProgress(ReleaseCtlError):
    """Raised when another attempt already holds the host lock."""
    pass


class ErrorHandler:
    """Handles and displays errors with recovery suggestions."""

    TYPE_SUGGESTIONS: Dict[type, List[str]] = {
        AuthenticationFailure: [
            "Check the credentials for the host's auth reference in the secret store",
            "Verify the SSH key is authorised for the deploy user on the host",
            "Test access manually: ssh <user>@<address> true",
        ],
        CommandTimeout: [
            "Check the host's load and network latency",
            "Raise the command timeout: releasectl config --set command_timeout=<seconds>",
        ],
        IntegrityMismatch: [
            "Rebuild the artifact and recompute its checksum",
            "Check free disk space under the host's deploy root",
        ],
        TransportExhausted: [
            "Check connectivity to the host and free disk space",
            "Retry the deployment once the host is reachable",
            "The live release was not changed",
        ],
        RollbackFailed: [
            "Manual intervention required: the restored release is not serving",
            "Inspect the web server on the host and its error log",
            "Point 'current' at a known-good slot under releases/ and reload the web server",
        ],
        DeploymentInProgress: [
            "Wait for the running deployment to this host to finish",
        ],
    }

    def __init__(self: Self) -> None:
        """Initialize the error handler."""
        self.error_patterns: Dict[str, Dict[str, Any]] = {
            "connection_refused": {
                "keywords": ["connection refused", "connection timed out", "no route to host",
                             "could not resolve hostname"],
                "suggestions": [
                    "Check that the host is up and reachable over SSH",
                    "Verify the host address: releasectl hosts list",
                    "Check firewall rules for the SSH port",
                ]
            },
            "permission_denied": {
                "keywords": ["permission denied", "operation not permitted", "sudo:"],
                "suggestions": [
                    "Check the deploy user owns the deploy root on the host",
                    "Allow the reload command in sudoers without a password",
                ]
            },
            "disk_space": {
                "keywords": ["no space left", "disk full", "quota exceeded"],
                "suggestions": [
                    "Free disk space on the host",
                    "Lower the release retention: releasectl config --set retention=<n>",
                ]
            },
            "missing_tool": {
                "keywords": ["command not found", "rsync: not found", "sha256sum: not found"],
                "suggestions": [
                    "Install rsync and coreutils on both machines",
                ]
            },
            "http_probe": {
                "keywords": ["http probe", "status code", "max retries exceeded"],
                "suggestions": [
                    "Check the web server serves the 'current' directory",
                    "Verify the host URL and health path in the configuration",
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

    def get_suggestions(self: Self, error: Exception) -> List[str]:
        """Get recovery suggestions for an error.

        Args:
            error: The error to analyze.

        Returns:
            List of recovery suggestions.
        """
        if isinstance(error, ReleaseCtlError) and error.suggestions:
            return error.suggestions

        for error_class, suggestions in self.TYPE_SUGGESTIONS.items():
            if isinstance(error, error_class):
                return suggestions

        error_type = self.identify_error_type(str(error))
        if error_type:
            return self.error_patterns[error_type]["suggestions"]

        return [
            "Re-run with --verbose for more detail",
            "Check the audit log: ~/.releasectl/logs/audit.log",
            "Inspect the host state: releasectl status <host>",
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
        content = []

        if context:
            content.append(f"[bold]Context:[/bold] {context}")
            content.append("")

        content.append(f"[bold red]{type(error).__name__}:[/bold red] {error}")

        if show_suggestions:
            suggestions = self.get_suggestions(error)
            if suggestions:
                content.append("")
                content.append("[bold blue]Suggested solutions:[/bold blue]")
                for i, suggestion in enumerate(suggestions, 1):
                    content.append(f"  {i}. {suggestion}")

        console.print(Panel(
            "\n".join(content),
            title="[bold red]releasectl error[/bold red]",
            border_style="red",
            expand=False
        ))


def exit_code_for(error: Exception) -> int:
    """Map an exception to the process exit status."""
    if isinstance(error, ReleaseCtlError):
        return error.exit_code
    return EXIT_FAILURE


def handle_exception(
    error: Exception,
    context: Optional[str] = None,
    exit_code: Optional[int] = None
) -> None:
    """Global exception handler for the CLI.

    Args:
        error: The exception that occurred.
        context: Optional context about what was being attempted.
        exit_code: Exit code to use when terminating. Derived from the error
            when omitted.
    """
    ErrorHandler().display_error(error, context)
    sys.exit(exit_code if exit_code is not None else exit_code_for(error))


def handle_keyboard_interrupt() -> None:
    """Handle Ctrl+C gracefully."""
    console.print("\n[yellow]Operation cancelled by user[/yellow]")
    sys.exit(EXIT_INTERRUPTED)
