"""
Session management - handles connection lifecycle and port forwarding.

- Session: one paramiko transport to host:port
- JumpSession: a chain of Sessions, each hop reached through a local
  forward on the previous one
- ProxyCommand and SOCKS helpers for reaching a host through a proxy
"""

from .base import BaseSession, SessionState
from .ssh import (
    HOSTS_FILE_LOCK,
    Session,
    camelize,
    connect,
    connected,
    disconnect,
    session,
    session_hostname,
    session_port,
    the_session,
    with_connection,
)
from .jump import JumpSession, jump_session
from .proxy import set_session_proxy, socks4_proxy, socks5_proxy
from .forward import (
    LocalForward,
    RemoteForward,
    forward_local_port,
    forward_remote_port,
    local_port_forward,
    remote_port_forward,
    unforward_local_port,
    unforward_remote_port,
)

__all__ = [
    # Base classes
    "BaseSession",
    "SessionState",
    # Sessions
    "Session",
    "JumpSession",
    "session",
    "jump_session",
    "connect",
    "connected",
    "disconnect",
    "the_session",
    "session_hostname",
    "session_port",
    "with_connection",
    "camelize",
    "HOSTS_FILE_LOCK",
    # Forwarding
    "LocalForward",
    "RemoteForward",
    "forward_local_port",
    "forward_remote_port",
    "unforward_local_port",
    "unforward_remote_port",
    "local_port_forward",
    "remote_port_forward",
    # Proxies
    "set_session_proxy",
    "socks4_proxy",
    "socks5_proxy",
]
