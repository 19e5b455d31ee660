"""
SSH session implementation using Paramiko.
"""

from __future__ import annotations
import getpass
import logging
import re
import socket
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Mapping, Optional

import paramiko

from ..context import SshContext, install_transport_log_filter, resolve_context
from ..errors import HostKeyError, SSHConnectionError, SshError
from ..identity import SshAgent
from .base import BaseSession, SessionState
from .forward import PortForwards

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22

# Serialises connects and known_hosts access across the process
HOSTS_FILE_LOCK = threading.Lock()

DEFAULT_AUTH_ORDER = ("password", "publickey", "keyboard-interactive")

_DASHED_KEY = re.compile(r"[a-z0-9]+(?:[-_][a-z0-9]+)+")


def camelize(key: str) -> str:
    """
    Convert an idiomatic dashed key to an SSH option name.

    >>> camelize("strict-host-key-checking")
    'StrictHostKeyChecking'

    Keys that are not lowercase dashed/underscored identifiers pass through.
    """
    if not _DASHED_KEY.fullmatch(key):
        return key
    return "".join(part.capitalize() for part in re.split(r"[-_]", key))


def option_value(value) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def expand_proxy_command(command: str, hostname: str, port: int, username: str) -> str:
    """Substitute %h, %p, %r and %% as ssh does for ProxyCommand."""
    tokens = {"h": hostname, "p": str(port), "r": username, "%": "%"}
    return re.sub(r"%([hpr%])", lambda m: tokens[m.group(1)], command)


def _split_list(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Session(BaseSession):
    """
    One SSH connection to hostname:port.

    Usage:
        session = Session(agent, "example.com", options={"strict-host-key-checking": "no"})
        with with_connection(session):
            result = ssh_exec(session, "uname -a")
    """

    def __init__(
        self,
        agent: SshAgent,
        hostname: str,
        username: Optional[str] = None,
        port: int = DEFAULT_PORT,
        password: Optional[str] = None,
        options: Optional[Mapping] = None,
        *,
        context: Optional[SshContext] = None,
    ):
        self.agent = agent
        self.hostname = hostname
        self.username = username or getpass.getuser()
        self.port = int(port)
        self.password = password
        self.context = context

        self._options: dict[str, str] = {}
        if context is not None:
            self.set_config(context.session_options)
        if options:
            self.set_config(options)

        self._state = SessionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._transport: Optional[paramiko.Transport] = None
        self._channels: list = []
        self.forwards = PortForwards()

    def __repr__(self):
        return f"<Session {self.username}@{self.hostname}:{self.port} {self.state.name}>"

    # -------------------------------------------------------------------------
    # Options
    # -------------------------------------------------------------------------

    def set_config(self, options: Mapping, literal: bool = False) -> None:
        """Set SSH options. Dashed keys are camelized unless ``literal``."""
        for key, value in options.items():
            name = key if literal else camelize(str(key))
            self._options[name] = option_value(value)

    def get_config(self, name: str) -> Optional[str]:
        """Option value by name, matched case-insensitively."""
        wanted = camelize(name).lower()
        for key, value in self._options.items():
            if key.lower() == wanted:
                return value
        return None

    @property
    def options(self) -> dict[str, str]:
        return dict(self._options)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        """Current session state (thread-safe)."""
        with self._state_lock:
            return self._state

    @property
    def connected(self) -> bool:
        if self.state != SessionState.CONNECTED:
            return False
        transport = self._transport
        return transport is not None and transport.is_active()

    def _set_state(self, new_state: SessionState, message: str = "") -> None:
        with self._state_lock:
            old_state = self._state
            self._state = new_state
        logger.info(f"Session {self.hostname}:{self.port}: {old_state.name} -> {new_state.name} {message}")

    @property
    def transport(self) -> Optional[paramiko.Transport]:
        return self._transport

    def require_transport(self) -> paramiko.Transport:
        if not self.connected:
            raise SshError(f"Session {self.hostname}:{self.port} is not connected")
        return self._transport

    def the_session(self) -> Session:
        return self

    # -------------------------------------------------------------------------
    # Channels
    # -------------------------------------------------------------------------

    def register_channel(self, channel) -> None:
        self._channels.append(channel)

    def unregister_channel(self, channel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    @property
    def channels(self) -> list:
        return list(self._channels)

    # -------------------------------------------------------------------------
    # Connect
    # -------------------------------------------------------------------------

    def _connect_timeout(self, timeout: Optional[float]) -> Optional[float]:
        if timeout:
            return timeout
        value = self.get_config("ConnectTimeout")
        if value:
            return float(value)
        context = self.context
        return context.connect_timeout if context is not None else None

    def connect(self, timeout: Optional[float] = None) -> None:
        if self.connected:
            return
        if self._transport is not None:
            # Dropped transport: release its channels and forwards first
            self.disconnect()

        timeout = self._connect_timeout(timeout)
        install_transport_log_filter()

        with HOSTS_FILE_LOCK:
            self._set_state(SessionState.CONNECTING)
            sock = None
            transport = None
            tried: list[str] = []
            try:
                sock = self._open_socket(timeout)
                transport = paramiko.Transport(sock)
                self._configure_transport(transport)
                transport.start_client(timeout=timeout)

                self._verify_host_key(transport)

                self._set_state(SessionState.AUTHENTICATING)
                self._authenticate(transport, tried)

                interval = self.get_config("ServerAliveInterval")
                if interval:
                    transport.set_keepalive(int(interval))

            except HostKeyError:
                self._abort(transport, sock)
                raise
            except paramiko.AuthenticationException as e:
                self._abort(transport, sock)
                raise SSHConnectionError(
                    f"Authentication failed for {self.username}@{self.hostname}:{self.port}: {e}",
                    host=self.hostname, port=self.port, username=self.username, identities=tried,
                ) from e
            except (OSError, paramiko.SSHException, EOFError) as e:
                self._abort(transport, sock)
                raise SSHConnectionError(
                    f"Connection to {self.hostname}:{self.port} failed: {e}",
                    host=self.hostname, port=self.port, username=self.username, identities=tried,
                ) from e

            self._transport = transport
            self._set_state(SessionState.CONNECTED)

    def _open_socket(self, timeout: Optional[float]):
        proxy_command = self.get_config("ProxyCommand")
        if not proxy_command or proxy_command.lower() == "none":
            return socket.create_connection((self.hostname, self.port), timeout=timeout)

        command = expand_proxy_command(proxy_command, self.hostname, self.port, self.username)
        logger.debug(f"Connecting to {self.hostname}:{self.port} via ProxyCommand {command!r}")
        sock = paramiko.ProxyCommand(command)
        if timeout:
            sock.settimeout(timeout)
        return sock

    def _abort(self, transport: Optional[paramiko.Transport], sock) -> None:
        if transport is not None:
            transport.close()
        elif sock is not None:
            sock.close()
        self._set_state(SessionState.FAILED)

    def _configure_transport(self, transport: paramiko.Transport) -> None:
        if (self.get_config("Compression") or "").lower() == "yes":
            transport.use_compression(True)

        security = transport.get_security_options()
        for option, attribute in (
            ("Ciphers", "ciphers"),
            ("KexAlgorithms", "kex"),
            ("HostKeyAlgorithms", "key_types"),
        ):
            requested = _split_list(self.get_config(option))
            if not requested:
                continue
            available = getattr(security, attribute)
            chosen = tuple(name for name in requested if name in available)
            if not chosen:
                logger.warning(f"None of {option}={requested} is supported, keeping defaults")
                continue
            setattr(security, attribute, chosen)
            logger.debug(f"{option}: {chosen}")

        known = {"compression", "ciphers", "kexalgorithms", "hostkeyalgorithms",
                 "stricthostkeychecking", "hostkeyalias", "connecttimeout",
                 "serveraliveinterval", "preferredauthentications", "proxycommand"}
        for key in self._options:
            if key.lower() not in known:
                logger.debug(f"Option {key} is not interpreted")

    # -------------------------------------------------------------------------
    # Host keys
    # -------------------------------------------------------------------------

    def host_key_id(self) -> str:
        """known_hosts lookup name: HostKeyAlias, or host with [host]:port form."""
        alias = self.get_config("HostKeyAlias")
        if alias:
            return alias
        if self.port != DEFAULT_PORT:
            return f"[{self.hostname}]:{self.port}"
        return self.hostname

    def _verify_host_key(self, transport: paramiko.Transport) -> None:
        key = transport.get_remote_server_key()
        host_id = self.host_key_id()
        key_type = key.get_name()
        checking = (self.get_config("StrictHostKeyChecking") or "ask").lower()

        path = self.agent.known_hosts_path
        host_keys = paramiko.HostKeys()
        if path and Path(path).expanduser().exists():
            host_keys.load(str(Path(path).expanduser()))

        known = host_keys.lookup(host_id)
        if known is not None and key_type in known:
            if known[key_type] == key:
                logger.debug(f"Host key for {host_id} matches known_hosts")
                return
            if checking != "no":
                raise HostKeyError(
                    f"Host key for {host_id} does not match known_hosts ({key_type})",
                    hostname=host_id, key_type=key_type, reason="mismatch", port=self.port,
                )
            logger.warning(f"Host key for {host_id} changed; accepted because StrictHostKeyChecking=no")
            return

        if checking in ("yes", "ask"):
            raise HostKeyError(
                f"Unknown host key for {host_id} ({key_type})",
                hostname=host_id, key_type=key_type, reason="unknown", port=self.port,
            )

        logger.info(f"Adding {key_type} host key for {host_id} to known_hosts")
        if path:
            self._record_host_key(Path(path).expanduser(), host_id, key)

    @staticmethod
    def _record_host_key(path: Path, host_id: str, key: paramiko.PKey) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(f"{host_id} {key.get_name()} {key.get_base64()}\n")

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    def _auth_order(self) -> tuple:
        preferred = _split_list(self.get_config("PreferredAuthentications"))
        return tuple(preferred) if preferred else DEFAULT_AUTH_ORDER

    def _authenticate(self, transport: paramiko.Transport, tried: list[str]) -> None:
        """Try each method in order until the transport is authenticated."""
        last_error: Optional[Exception] = None

        for method in self._auth_order():
            try:
                if method == "password" and self.password is not None:
                    tried.append("password")
                    transport.auth_password(self.username, self.password)

                elif method == "publickey":
                    for identity in self.agent.usable_identities():
                        tried.append(identity.name)
                        try:
                            transport.auth_publickey(self.username, identity.pkey)
                        except paramiko.AuthenticationException as e:
                            last_error = e
                            logger.debug(f"Identity {identity.name} rejected: {e}")
                            continue
                        break
                    if not transport.is_authenticated():
                        for key in self.agent.system_keys():
                            tried.append(f"agent:{key.get_name()}")
                            try:
                                transport.auth_publickey(self.username, key)
                            except paramiko.AuthenticationException as e:
                                last_error = e
                                logger.debug(f"Agent key {key.get_name()} rejected: {e}")
                                continue
                            break

                elif method == "keyboard-interactive" and self.password is not None:
                    tried.append("keyboard-interactive")
                    password = self.password
                    transport.auth_interactive(
                        self.username,
                        lambda title, instructions, prompts: [password] * len(prompts),
                    )

            except paramiko.AuthenticationException as e:
                last_error = e
                logger.debug(f"Auth method {method} failed: {e}")

            if transport.is_authenticated():
                logger.debug(f"Authenticated {self.username}@{self.hostname} with {method}")
                return

        raise paramiko.AuthenticationException(
            f"All auth methods failed. Last error: {last_error}"
        )

    # -------------------------------------------------------------------------
    # Disconnect
    # -------------------------------------------------------------------------

    def disconnect(self) -> None:
        transport, self._transport = self._transport, None

        for channel in list(self._channels):
            channel.disconnect()
        self._channels.clear()

        self.forwards.stop_all(transport)

        if transport is not None:
            # Stops and joins the transport's reader thread
            transport.close()

        if self.state != SessionState.DISCONNECTED:
            self._set_state(SessionState.DISCONNECTED)


# =============================================================================
# Functional API
# =============================================================================

SESSION_ARGS = ("username", "port", "password")


def session(
    agent: Optional[SshAgent],
    hostname: str,
    *,
    context: Optional[SshContext] = None,
    **kwargs,
) -> Session:
    """
    Build a session. ``username``, ``port`` and ``password`` are session
    fields; every other keyword becomes an SSH option
    (strict_host_key_checking="no" -> StrictHostKeyChecking=no).
    """
    context = resolve_context(context)
    fields = {k: kwargs.pop(k) for k in SESSION_ARGS if k in kwargs}
    return Session(
        agent if agent is not None else context.get_agent(),
        hostname,
        options=kwargs,
        context=context,
        **fields,
    )


def connect(session: BaseSession, timeout: Optional[float] = None) -> None:
    session.connect(timeout)


def disconnect(session: BaseSession) -> None:
    session.disconnect()


def connected(session: BaseSession) -> bool:
    return session.connected


def the_session(session: BaseSession) -> Session:
    return session.the_session()


def session_hostname(session: BaseSession) -> str:
    return the_session(session).hostname


def session_port(session: BaseSession) -> int:
    return the_session(session).port


@contextmanager
def with_connection(session: BaseSession, timeout: Optional[float] = None) -> Iterator[BaseSession]:
    """Connect if needed; always disconnect on the way out."""
    try:
        if not session.connected:
            session.connect(timeout)
        yield session
    finally:
        session.disconnect()
