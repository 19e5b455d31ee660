"""
Exception hierarchy for sshwire.

Every error carries enough context (host, port, identity name, scp code)
for the caller to decide between retrying and giving up. Nothing in the
library retries on its own.
"""

from __future__ import annotations
from enum import Enum
from typing import Optional, Sequence


class SshError(Exception):
    """Base class for all sshwire errors."""


# =============================================================================
# Connection
# =============================================================================

class SSHConnectionError(SshError, ConnectionError):
    """Transport connect failure (network, authentication, host key)."""

    def __init__(
        self,
        message: str,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        identities: Sequence[str] = (),
    ):
        super().__init__(message)
        self.host = host
        self.port = port
        self.username = username
        self.identities = list(identities)


class HostKeyError(SSHConnectionError):
    """Server host key is unknown or does not match known_hosts."""

    def __init__(
        self,
        message: str,
        hostname: str,
        key_type: str,
        reason: str,
        port: Optional[int] = None,
    ):
        super().__init__(message, host=hostname, port=port)
        self.hostname = hostname
        self.key_type = key_type
        self.reason = reason


class ChannelOpenReason(Enum):
    """Why a channel could not be opened."""
    SESSION_DOWN = "session-down"
    CHANNEL_OPEN_FAILED = "channel-open-failed"
    UNKNOWN = "unknown"


class ChannelOpenError(SshError):
    """
    Channel could not be opened on a session.

    ``reason`` separates a lost session (reconnect and retry) from a refused
    or timed out open request (likely a session level timeout).
    """

    def __init__(self, message: str, reason: ChannelOpenReason, kind: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.kind = kind


# =============================================================================
# SFTP
# =============================================================================

class UnsupportedCommandError(SshError, ValueError):
    """Unknown SFTP command name."""

    def __init__(self, command):
        super().__init__(f"Unknown SFTP command {command!r}")
        self.command = command


class TransferCancelledError(SshError):
    """A progress monitor asked to stop an SFTP transfer."""

    def __init__(self, operation: str, source: str):
        super().__init__(f"SFTP {operation} of {source} cancelled by monitor")
        self.operation = operation
        self.source = source


# =============================================================================
# SCP
# =============================================================================

SCP_ERROR_MESSAGES = {
    1: "scp error",
    2: "scp fatal error",
    -1: "disconnect error",
}


class ScpError(SshError):
    """Non-zero acknowledgement or other scp failure."""

    def __init__(self, message: str, code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.code = code
        self.detail = detail

    @classmethod
    def from_ack(cls, code: int, detail: str = "") -> ScpError:
        kind = SCP_ERROR_MESSAGES.get(code, "unknown error")
        message = f"scp failure: {kind}"
        if detail:
            message += f": {detail}"
        return cls(message, code=code, detail=detail)


class ScpProtocolError(ScpError):
    """Malformed or unexpected scp control line."""

    def __init__(self, message: str, line: Optional[str] = None):
        super().__init__(message)
        self.line = line


class DirectoryCopyWithoutRecursiveFlagError(ScpError):
    def __init__(self, path: str):
        super().__init__(f"Copy of dir {path} requested without recursive flag")
        self.path = path


class MultipleFilesToSingleDestinationError(ScpError):
    def __init__(self, path: str):
        super().__init__(f"Copy of multiple files to file {path} requested")
        self.path = path


# =============================================================================
# Identities
# =============================================================================

class PassphraseNotFoundError(SshError):
    """Key is encrypted and no resolver produced a passphrase."""

    def __init__(self, key_name: str):
        super().__init__(f"Passphrase required for key {key_name}, but none findable.")
        self.key_name = key_name


class UnknownIdentityConstructionError(SshError, ValueError):
    """Not enough fields given to build an identity."""

    def __init__(self, args: dict):
        super().__init__(f"Don't know how to create keypair from {sorted(args)}")
        self.args_given = dict(args)
