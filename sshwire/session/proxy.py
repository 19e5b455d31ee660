"""
Connecting through a SOCKS proxy.

A proxy is expressed as a ProxyCommand session option, run through
paramiko.ProxyCommand at connect time. The SOCKS helpers build commands for
OpenBSD netcat (``nc -X``), which most distributions ship.

Usage:
    s = Session(agent, "internal.example.com")
    set_session_proxy(s, socks5_proxy("proxy.example.com", 1080))
"""

from __future__ import annotations
import logging

from .ssh import Session

logger = logging.getLogger(__name__)


def socks5_proxy(host: str, port: int = 1080) -> str:
    """ProxyCommand reaching the target through a SOCKS5 proxy."""
    return f"nc -X 5 -x {host}:{int(port)} %h %p"


def socks4_proxy(host: str, port: int = 1080) -> str:
    """ProxyCommand reaching the target through a SOCKS4 proxy."""
    return f"nc -X 4 -x {host}:{int(port)} %h %p"


def set_session_proxy(session: Session, proxy_command: str) -> None:
    """
    Route the session's next connect through ``proxy_command``
    (%h, %p and %r expand to host, port and user).
    """
    session.set_config({"ProxyCommand": proxy_command}, literal=True)
    logger.debug(f"Session {session.hostname}:{session.port} proxied via {proxy_command!r}")
