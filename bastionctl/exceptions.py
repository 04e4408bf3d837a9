"""Custom exception hierarchy for bastionctl.

All bastionctl-specific exceptions inherit from BastionCtlError, so the
reconciliation loop and the CLI can catch them with a single except clause.
"""

from __future__ import annotations

from collections.abc import Sequence


class BastionCtlError(Exception):
    """Base exception for all bastionctl errors."""


class ConfigurationError(BastionCtlError):
    """Raised for invalid configuration or missing required settings."""


class NotFoundError(BastionCtlError):
    """Raised when a named provider resource does not exist."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} {name!r} not found")


class TypeMismatchError(BastionCtlError):
    """Raised when a provider payload has an unexpected shape."""

    def __init__(self, path: str, expected: str, got: object) -> None:
        self.path = path
        self.expected = expected
        self.got = type(got).__name__
        super().__init__(f"{path}: expected {expected}, got {self.got}")


class TransientError(BastionCtlError):
    """Raised when an operation failed in a way that is worth retrying."""


class DeadlineExceeded(BastionCtlError):  # noqa: N818
    """Raised when an operation does not finish before its deadline."""


class ProtocolViolation(BastionCtlError):  # noqa: N818
    """Raised when a peer sends a frame the command server cannot accept."""


class RemoteCommandError(BastionCtlError):
    """Raised when a remote (or local privileged) command exits non-zero."""

    def __init__(self, argv: Sequence[str], exit_code: int, output: str) -> None:
        self.argv = tuple(argv)
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            f"Command {' '.join(self.argv)!r} failed ({exit_code}): {output.strip()[:500]}"
        )


class DnsProviderError(BastionCtlError):
    """Raised when the DNS provider reports an unsuccessful mutation."""


class BastionSetupError(BastionCtlError):
    """Raised when bastion provisioning fails on the command server."""
