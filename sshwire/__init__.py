"""
sshwire - an SSH client library on paramiko.

- Sessions with OpenSSH-style options, host key checking and jump hosts
- Exec and shell channels, buffered or streaming
- SFTP command dispatch and scp transfers
- Identity store with lazy passphrase resolution and key generation
- Local and remote port forwarding
"""

__version__ = "0.1.0"

from .context import (
    SshContext,
    default_context,
    reset_default_context,
    set_default_context,
    set_transport_log_levels,
    transport_log_levels,
    using_agent,
    using_session_options,
)
from .errors import (
    ChannelOpenError,
    ChannelOpenReason,
    DirectoryCopyWithoutRecursiveFlagError,
    HostKeyError,
    MultipleFilesToSingleDestinationError,
    PassphraseNotFoundError,
    ScpError,
    ScpProtocolError,
    SSHConnectionError,
    SshError,
    TransferCancelledError,
    UnknownIdentityConstructionError,
    UnsupportedCommandError,
)
from .identity import (
    Identity,
    SshAgent,
    add_identity,
    add_identity_with_keychain,
    copy_identities,
    fingerprint,
    has_identity,
    keypair,
    ssh_agent,
    ssh_agent_p,
)
from .keygen import generate_keypair
from .session import (
    JumpSession,
    Session,
    SessionState,
    connect,
    connected,
    disconnect,
    forward_local_port,
    forward_remote_port,
    jump_session,
    local_port_forward,
    remote_port_forward,
    session,
    session_hostname,
    session_port,
    set_session_proxy,
    socks4_proxy,
    socks5_proxy,
    the_session,
    unforward_local_port,
    unforward_remote_port,
    with_connection,
)
from .channel import (
    Channel,
    ChannelKind,
    ChannelStreams,
    ExecResult,
    SftpChannel,
    connect_channel,
    connected_channel,
    disconnect_channel,
    exec_channel,
    exit_status,
    open_channel,
    sftp_channel,
    shell_channel,
    ssh,
    ssh_exec,
    ssh_sftp,
    ssh_shell,
    with_channel_connection,
)
from .sftp import LoggingMonitor, ProgressMonitor, sftp
from .scp import scp_from, scp_to

__all__ = [
    # Context
    "SshContext",
    "default_context",
    "set_default_context",
    "reset_default_context",
    "using_agent",
    "using_session_options",
    "set_transport_log_levels",
    "transport_log_levels",
    # Errors
    "SshError",
    "SSHConnectionError",
    "HostKeyError",
    "ChannelOpenError",
    "ChannelOpenReason",
    "UnsupportedCommandError",
    "TransferCancelledError",
    "ScpError",
    "ScpProtocolError",
    "DirectoryCopyWithoutRecursiveFlagError",
    "MultipleFilesToSingleDestinationError",
    "PassphraseNotFoundError",
    "UnknownIdentityConstructionError",
    # Identities
    "Identity",
    "SshAgent",
    "ssh_agent",
    "ssh_agent_p",
    "has_identity",
    "keypair",
    "add_identity",
    "add_identity_with_keychain",
    "copy_identities",
    "fingerprint",
    "generate_keypair",
    # Sessions
    "Session",
    "JumpSession",
    "SessionState",
    "session",
    "jump_session",
    "connect",
    "connected",
    "disconnect",
    "the_session",
    "session_hostname",
    "session_port",
    "with_connection",
    "forward_local_port",
    "forward_remote_port",
    "unforward_local_port",
    "unforward_remote_port",
    "local_port_forward",
    "remote_port_forward",
    "set_session_proxy",
    "socks4_proxy",
    "socks5_proxy",
    # Channels
    "Channel",
    "SftpChannel",
    "ChannelKind",
    "ChannelStreams",
    "ExecResult",
    "open_channel",
    "exec_channel",
    "shell_channel",
    "sftp_channel",
    "connect_channel",
    "disconnect_channel",
    "connected_channel",
    "exit_status",
    "with_channel_connection",
    "ssh",
    "ssh_exec",
    "ssh_shell",
    "ssh_sftp",
    # Transfers
    "sftp",
    "ProgressMonitor",
    "LoggingMonitor",
    "scp_to",
    "scp_from",
]
