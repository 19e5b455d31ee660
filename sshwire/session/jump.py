"""
Jump host chaining.

Each hop after the first is reached through a local port forward opened on
the previous hop, and connected to as "localhost" on that port with
HostKeyAlias set to the real hostname so known_hosts checks still apply.
"""

from __future__ import annotations
import logging
from typing import Mapping, Optional, Sequence

from ..context import SshContext, resolve_context
from ..errors import SSHConnectionError, SshError
from ..identity import SshAgent
from .base import BaseSession, SessionState
from .forward import forward_local_port
from .ssh import DEFAULT_PORT, SESSION_ARGS, Session

logger = logging.getLogger(__name__)


class JumpSession(BaseSession):
    """
    Session reached through a chain of hops.

    ``hosts`` is an ordered list of mappings with ``hostname`` and optional
    ``port``, ``username``, ``password``; any other keys are SSH options for
    that hop. The last entry is the target.
    """

    def __init__(
        self,
        agent: SshAgent,
        hosts: Sequence[Mapping],
        timeout: Optional[float] = None,
        *,
        context: Optional[SshContext] = None,
    ):
        if not hosts:
            raise ValueError("Must provide at least one host to connect to")
        for host in hosts:
            if "hostname" not in host:
                raise ValueError(f"Hop {dict(host)!r} has no hostname")
        self.agent = agent
        self.hosts = [dict(host) for host in hosts]
        self.timeout = timeout
        self.context = context
        self.sessions: list[Session] = []
        self._failed = False

    def __repr__(self):
        chain = " -> ".join(h["hostname"] for h in self.hosts)
        return f"<JumpSession {chain} {self.state.name}>"

    @property
    def state(self) -> SessionState:
        if self._failed:
            return SessionState.FAILED
        if self.connected:
            return SessionState.CONNECTED
        return SessionState.DISCONNECTED

    @property
    def connected(self) -> bool:
        return bool(self.sessions) and all(s.connected for s in self.sessions)

    def _hop_session(self, host: Mapping, hostname: str, port: int) -> Session:
        fields = {k: host[k] for k in SESSION_ARGS if k in host and k != "port"}
        options = {k: v for k, v in host.items() if k not in SESSION_ARGS and k != "hostname"}
        return Session(self.agent, hostname, port=port, options=options, context=self.context, **fields)

    def _connect_hop(self, session: Session, timeout: Optional[float]) -> None:
        self.sessions.append(session)
        try:
            session.connect(timeout)
        except SshError as e:
            self._failed = True
            raise SSHConnectionError(
                f"Failed to connect {session.username}@{session.hostname}:{session.port} "
                f"{self.agent.identity_names()} {[h['hostname'] for h in self.hosts]}",
                host=session.hostname, port=session.port, username=session.username,
                identities=getattr(e, "identities", ()),
            ) from e

    def connect(self, timeout: Optional[float] = None) -> None:
        if self.connected:
            return
        if self.sessions:
            self.disconnect()
        timeout = timeout or self.timeout
        self._failed = False

        first = self.hosts[0]
        logger.info(f"Connecting to jump host 1/{len(self.hosts)}: {first['hostname']}")
        self._connect_hop(
            self._hop_session(first, first["hostname"], int(first.get("port", DEFAULT_PORT))),
            timeout,
        )

        for i, host in enumerate(self.hosts[1:], start=2):
            previous = self.sessions[-1]
            local_port = forward_local_port(
                previous, 0, int(host.get("port", DEFAULT_PORT)), host["hostname"]
            )
            logger.info(
                f"Connecting to hop {i}/{len(self.hosts)}: {host['hostname']} via localhost:{local_port}"
            )
            hop = self._hop_session(host, "localhost", local_port)
            hop.set_config({"HostKeyAlias": host["hostname"]}, literal=True)
            self._connect_hop(hop, timeout)

    def disconnect(self) -> None:
        for session in reversed(self.sessions):
            session.disconnect()
        self.sessions = []
        self._failed = False

    def the_session(self) -> Session:
        if not self.sessions:
            raise SshError("Jump session is not connected")
        return self.sessions[-1]


def jump_session(
    agent: Optional[SshAgent],
    hosts: Sequence[Mapping],
    timeout: Optional[float] = None,
    *,
    context: Optional[SshContext] = None,
) -> JumpSession:
    """Connect via a sequence of jump hosts. Call ``connect`` to open the chain."""
    context = resolve_context(context)
    return JumpSession(
        agent if agent is not None else context.get_agent(),
        hosts,
        timeout,
        context=context,
    )
