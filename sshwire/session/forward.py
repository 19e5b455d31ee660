"""
Local and remote TCP port forwarding over a connected session.
"""

from __future__ import annotations
import logging
import select
import socket
import socketserver
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import paramiko

logger = logging.getLogger(__name__)

FORWARD_BUFFER_SIZE = 16384


def bidirectional_forward(sock: socket.socket, chan: paramiko.Channel, stop_event: threading.Event) -> None:
    """Pump bytes between a socket and a channel until either side closes."""
    while not stop_event.is_set():
        r, _, _ = select.select([sock, chan], [], [], 1.0)
        if sock in r:
            data = sock.recv(FORWARD_BUFFER_SIZE)
            if not data:
                break
            chan.sendall(data)
        if chan in r:
            data = chan.recv(FORWARD_BUFFER_SIZE)
            if not data:
                break
            sock.sendall(data)


class _ThreadedTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True


class LocalForward:
    """
    Listen on a local port and tunnel each connection to
    remote_host:remote_port through the transport.
    """

    def __init__(
        self,
        transport: paramiko.Transport,
        local_port: int,
        remote_host: str,
        remote_port: int,
        bind_address: str = "127.0.0.1",
    ):
        self.local_port = local_port
        self.remote_host = remote_host
        self.remote_port = remote_port
        self.bind_address = bind_address
        self._transport = transport
        self._stop_event = threading.Event()
        self._server: Optional[socketserver.TCPServer] = None
        self._acceptor_thread: Optional[threading.Thread] = None

        self._start()

    @property
    def active(self) -> bool:
        return not self._stop_event.is_set() and self._server is not None

    def _start(self) -> None:
        forward = self

        class ForwardHandler(socketserver.BaseRequestHandler):
            def handle(self):
                try:
                    chan = forward._transport.open_channel(
                        "direct-tcpip",
                        (forward.remote_host, forward.remote_port),
                        self.request.getpeername(),
                    )
                except (paramiko.SSHException, OSError) as e:
                    logger.error(f"Forward channel open failed: {e}")
                    return

                try:
                    bidirectional_forward(self.request, chan, forward._stop_event)
                finally:
                    chan.close()

        self._server = _ThreadedTCPServer((self.bind_address, self.local_port), ForwardHandler)
        # Port 0 means OS-assigned
        self.local_port = self._server.server_address[1]

        self._acceptor_thread = threading.Thread(
            target=self._server.serve_forever,
            name=f"sshwire-forward-{self.local_port}",
            daemon=True,
        )
        self._acceptor_thread.start()
        logger.info(
            f"Forwarding {self.bind_address}:{self.local_port} -> "
            f"{self.remote_host}:{self.remote_port}"
        )

    def stop(self) -> None:
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        if self._server:
            self._server.shutdown()
            self._server.server_close()
        if self._acceptor_thread:
            self._acceptor_thread.join(timeout=3.0)
        logger.info(f"Forward on port {self.local_port} stopped")

    def __repr__(self):
        state = "active" if self.active else "stopped"
        return (
            f"LocalForward({self.bind_address}:{self.local_port} -> "
            f"{self.remote_host}:{self.remote_port}, {state})"
        )


@dataclass
class RemoteForward:
    """Server side port tunnelled back to local_host:local_port."""
    remote_port: int
    local_host: str
    local_port: int
    bind_address: str = "localhost"


class RemoteForwardDispatcher:
    """
    Transport handler for forwarded-tcpip channels.

    A transport holds a single handler, so one dispatcher per session routes
    incoming channels by the server port they arrived on.
    """

    def __init__(self):
        self.forwards: dict[int, RemoteForward] = {}
        self._stop_event = threading.Event()

    def __call__(self, chan: paramiko.Channel, origin: tuple, server: tuple) -> None:
        forward = self.forwards.get(server[1])
        if forward is None:
            logger.warning(f"No remote forward registered for port {server[1]}")
            chan.close()
            return
        thread = threading.Thread(
            target=self._pump,
            args=(chan, forward),
            name=f"sshwire-rforward-{forward.remote_port}",
            daemon=True,
        )
        thread.start()

    def _pump(self, chan: paramiko.Channel, forward: RemoteForward) -> None:
        try:
            sock = socket.create_connection((forward.local_host, forward.local_port))
        except OSError as e:
            logger.error(f"Remote forward to {forward.local_host}:{forward.local_port} failed: {e}")
            chan.close()
            return
        try:
            bidirectional_forward(sock, chan, self._stop_event)
        finally:
            chan.close()
            sock.close()

    def stop(self) -> None:
        self._stop_event.set()


class PortForwards:
    """Forwards registered on one session, keyed by port."""

    def __init__(self):
        self.local: dict[int, LocalForward] = {}
        self.remote: dict[int, RemoteForward] = {}
        self._dispatcher = RemoteForwardDispatcher()

    def add_local(
        self,
        transport: paramiko.Transport,
        local_port: int,
        remote_host: str,
        remote_port: int,
    ) -> int:
        if local_port and local_port in self.local:
            raise ValueError(f"Local port {local_port} is already forwarded")
        forward = LocalForward(transport, local_port, remote_host, remote_port)
        self.local[forward.local_port] = forward
        return forward.local_port

    def remove_local(self, local_port: int) -> None:
        forward = self.local.pop(local_port, None)
        if forward is None:
            logger.debug(f"No local forward on port {local_port}")
            return
        forward.stop()

    def add_remote(
        self,
        transport: paramiko.Transport,
        remote_port: int,
        local_host: str,
        local_port: int,
        bind_address: str = "localhost",
    ) -> int:
        if remote_port and remote_port in self.remote:
            raise ValueError(f"Remote port {remote_port} is already forwarded")
        port = transport.request_port_forward(bind_address, remote_port, handler=self._dispatcher)
        forward = RemoteForward(port, local_host, local_port, bind_address)
        self.remote[port] = forward
        self._dispatcher.forwards[port] = forward
        logger.info(f"Remote forward {bind_address}:{port} -> {local_host}:{local_port}")
        return port

    def remove_remote(self, transport: Optional[paramiko.Transport], remote_port: int) -> None:
        forward = self.remote.pop(remote_port, None)
        self._dispatcher.forwards.pop(remote_port, None)
        if forward is None:
            logger.debug(f"No remote forward on port {remote_port}")
            return
        if transport is not None and transport.is_active():
            transport.cancel_port_forward(forward.bind_address, remote_port)
            if self.remote:
                logger.warning(
                    "Cancelling a remote forward stops delivery for the "
                    f"remaining ones: {sorted(self.remote)}"
                )

    def stop_all(self, transport: Optional[paramiko.Transport]) -> None:
        for port in list(self.local):
            self.remove_local(port)
        for port in list(self.remote):
            self.remove_remote(transport, port)
        self._dispatcher.stop()
        self._dispatcher = RemoteForwardDispatcher()


# =============================================================================
# Functional API
# =============================================================================

def forward_local_port(session, local_port: int, remote_port: int, remote_host: str = "localhost") -> int:
    """Start local port forwarding. Returns the actual local port."""
    s = session.the_session()
    return s.forwards.add_local(s.require_transport(), local_port, remote_host, remote_port)


def unforward_local_port(session, local_port: int) -> None:
    session.the_session().forwards.remove_local(local_port)


def forward_remote_port(session, remote_port: int, local_port: int, local_host: str = "localhost") -> int:
    """Start remote port forwarding. Returns the actual remote port."""
    s = session.the_session()
    return s.forwards.add_remote(s.require_transport(), remote_port, local_host, local_port)


def unforward_remote_port(session, remote_port: int) -> None:
    s = session.the_session()
    s.forwards.remove_remote(s.transport, remote_port)


@contextmanager
def local_port_forward(
    session, local_port: int, remote_port: int, remote_host: str = "localhost"
) -> Iterator[int]:
    """Forward for the duration of the block. Yields the actual local port."""
    port = forward_local_port(session, local_port, remote_port, remote_host)
    try:
        yield port
    finally:
        unforward_local_port(session, port)


@contextmanager
def remote_port_forward(
    session, remote_port: int, local_port: int, local_host: str = "localhost"
) -> Iterator[int]:
    """Forward for the duration of the block. Yields the actual remote port."""
    port = forward_remote_port(session, remote_port, local_port, local_host)
    try:
        yield port
    finally:
        unforward_remote_port(session, port)
