"""
Exec, shell and SFTP channels on a connected session.

Buffered calls block the caller's thread, polling the channel until the
remote side is done. Streaming calls return file objects right after the
channel connects; the caller drains them and disconnects.
"""

from __future__ import annotations
import io
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import IO, Iterator, Optional, Union

import paramiko
from paramiko.agent import AgentRequestHandler
from paramiko.sftp import CMD_INIT, CMD_VERSION

from .context import SshContext, resolve_context
from .errors import ChannelOpenError, ChannelOpenReason, SshError
from .session.base import BaseSession
from .session.ssh import session as make_session, with_connection

logger = logging.getLogger(__name__)

SFTP_PROTOCOL_VERSION = 3

OUT_BYTES = "bytes"
OUT_STREAM = "stream"

Input = Union[None, str, bytes, IO[bytes]]


class ChannelKind(str, Enum):
    EXEC = "exec"
    SHELL = "shell"
    SFTP = "sftp"


@dataclass
class ExecResult:
    """Outcome of a buffered exec or shell run."""
    exit: int
    out: Union[str, bytes]
    err: Union[str, bytes]


@dataclass
class ChannelStreams:
    """
    Live streams of a running channel.

    ``session`` is set when the call created the session itself; the caller
    disconnects it once done.
    """
    channel: Channel
    out_stream: IO[bytes]
    err_stream: Optional[IO[bytes]] = None
    in_stream: Optional[IO[bytes]] = None
    session: Optional[BaseSession] = None

    def close(self) -> None:
        self.channel.disconnect()
        if self.session is not None:
            self.session.disconnect()


class Channel:
    """
    A paramiko channel plus the settings applied when it connects.

    Not connected until ``connect()``; connected until the remote side is
    done or ``disconnect()`` is called.
    """

    def __init__(self, session, chan: paramiko.Channel, kind: ChannelKind):
        self.session = session
        self.kind = ChannelKind(kind)
        self.command: Optional[str] = None
        self.pty = self.kind == ChannelKind.SHELL
        self.term = "vt100"
        self.agent_forwarding = False
        self._chan = chan
        self._agent_handler: Optional[AgentRequestHandler] = None
        self._started = False
        self._closed = False
        session.register_channel(self)

    def __repr__(self):
        state = "connected" if self.connected else "disconnected"
        return f"<Channel {self.kind.value} {state}>"

    @property
    def raw(self) -> paramiko.Channel:
        """The underlying paramiko channel."""
        return self._chan

    def connect(self) -> None:
        if self._started:
            return
        chan = self._chan
        if self.agent_forwarding:
            self._agent_handler = AgentRequestHandler(chan)
        if self.pty:
            chan.get_pty(term=self.term)

        if self.kind == ChannelKind.EXEC:
            if self.command is None:
                raise SshError("Exec channel has no command")
            chan.exec_command(self.command)
        elif self.kind == ChannelKind.SHELL:
            # Shell output is one stream, as on a terminal
            chan.set_combine_stderr(True)
            chan.invoke_shell()
        else:
            chan.invoke_subsystem("sftp")
        self._started = True
        logger.debug(f"Channel {self.kind.value} connected")

    @property
    def connected(self) -> bool:
        if not self._started or self._closed:
            return False
        chan = self._chan
        if chan.closed:
            return False
        if chan.eof_received and chan.exit_status_ready():
            return False
        return True

    @property
    def exit_status(self) -> Optional[int]:
        """Remote exit status, or None while the channel is still connected."""
        if not self._started or self.connected:
            return None
        if self._chan.exit_status_ready():
            return self._chan.recv_exit_status()
        return -1

    def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._agent_handler is not None:
            self._agent_handler.close()
            self._agent_handler = None
        self._chan.close()
        self.session.unregister_channel(self)
        logger.debug(f"Channel {self.kind.value} disconnected")


class SFTPSession(paramiko.SFTPClient):
    """SFTP client that keeps the server's version and extension pairs."""

    server_version: Optional[int] = None
    extensions: Optional[dict] = None

    def _send_version(self):
        # Stock handshake discards the extension pairs after the version
        m = paramiko.Message()
        m.add_int(SFTP_PROTOCOL_VERSION)
        self._send_packet(CMD_INIT, m)
        t, data = self._read_packet()
        if t != CMD_VERSION:
            raise paramiko.SFTPError("Incompatible sftp protocol")
        reply = paramiko.Message(data)
        self.server_version = reply.get_int()
        self.extensions = {}
        while reply.get_remainder():
            name = reply.get_text()
            self.extensions[name] = reply.get_text()
        return self.server_version


class SftpChannel(Channel):
    """SFTP subsystem channel with local and remote working directories."""

    def __init__(self, session, chan: paramiko.Channel):
        super().__init__(session, chan, ChannelKind.SFTP)
        self.client: Optional[SFTPSession] = None
        self.home: Optional[str] = None
        self.local_cwd = os.getcwd()

    def connect(self) -> None:
        if self._started:
            return
        super().connect()
        self.client = SFTPSession(self._chan)
        self.home = self.client.normalize(".")
        logger.debug(f"SFTP version {self.client.server_version}, home {self.home}")

    def disconnect(self) -> None:
        if self.client is not None and not self._closed:
            self.client.close()
        super().disconnect()


# =============================================================================
# Opening channels
# =============================================================================

def _open_failure(message: str, reason: ChannelOpenReason, kind: ChannelKind) -> ChannelOpenError:
    return ChannelOpenError(f"open-channel failure: {message}", reason, kind.value)


def open_channel(session: BaseSession, kind: Union[ChannelKind, str]) -> Channel:
    """
    Open an unconnected channel of ``kind`` on the session.

    Raises:
        ChannelOpenError: reason tells a lost session from a refused or
            timed out open request
    """
    kind = ChannelKind(kind)
    try:
        s = session.the_session()
    except SshError as e:
        raise _open_failure(str(e), ChannelOpenReason.SESSION_DOWN, kind) from e

    transport = s.transport
    if transport is None or not transport.is_active():
        raise _open_failure("session is down", ChannelOpenReason.SESSION_DOWN, kind)

    try:
        chan = transport.open_session()
    except paramiko.ChannelException as e:
        raise _open_failure(
            f"{e} (possible session timeout)", ChannelOpenReason.CHANNEL_OPEN_FAILED, kind
        ) from e
    except paramiko.SSHException as e:
        message = str(e)
        if "session not active" in message:
            reason = ChannelOpenReason.SESSION_DOWN
        elif message in ("Timeout opening channel.", "Unable to open channel."):
            reason = ChannelOpenReason.CHANNEL_OPEN_FAILED
            message += " (possible session timeout)"
        else:
            reason = ChannelOpenReason.UNKNOWN
        raise _open_failure(message, reason, kind) from e
    except (OSError, EOFError) as e:
        raise _open_failure(str(e), ChannelOpenReason.SESSION_DOWN, kind) from e

    if kind == ChannelKind.SFTP:
        return SftpChannel(s, chan)
    return Channel(s, chan, kind)


def exec_channel(session: BaseSession) -> Channel:
    return open_channel(session, ChannelKind.EXEC)


def shell_channel(session: BaseSession) -> Channel:
    return open_channel(session, ChannelKind.SHELL)


def sftp_channel(session: BaseSession) -> SftpChannel:
    return open_channel(session, ChannelKind.SFTP)


def connect_channel(channel: Channel) -> None:
    channel.connect()


def disconnect_channel(channel: Channel) -> None:
    channel.disconnect()


def connected_channel(channel: Channel) -> bool:
    return channel.connected


def exit_status(channel: Channel) -> Optional[int]:
    return channel.exit_status


@contextmanager
def with_channel_connection(channel: Channel) -> Iterator[Channel]:
    """Connect the channel if needed; always disconnect it on exit."""
    try:
        if not channel.connected:
            channel.connect()
        yield channel
    finally:
        channel.disconnect()


# =============================================================================
# Running commands
# =============================================================================

def _input_stream(value: Input) -> Optional[IO[bytes]]:
    if value is None:
        return None
    if isinstance(value, str):
        return io.BytesIO(value.encode("utf-8"))
    if isinstance(value, (bytes, bytearray)):
        return io.BytesIO(bytes(value))
    return value


def shell_input(text: str) -> str:
    """Append an exit so the shell ends with the last command's status."""
    body = text.rstrip().rstrip(";").rstrip()
    if not body:
        return "exit $?;\n"
    return f"{body};exit $?;\n"


def _decode(data: bytes, out: str) -> Union[str, bytes]:
    if out == OUT_BYTES:
        return bytes(data)
    return bytes(data).decode(out, errors="replace")


class _InputPump:
    """Feeds an input stream into the channel without blocking the poll loop."""

    def __init__(self, source: Optional[IO[bytes]], chunk_size: int):
        self.source = source
        self.chunk_size = chunk_size
        self.pending = b""
        self.done = source is None

    def step(self, chan: paramiko.Channel) -> bool:
        """Send what the channel accepts. Returns True if anything happened."""
        if self.done:
            return False
        if chan.closed:
            self.done = True
            return False
        if not chan.send_ready():
            return False
        if not self.pending:
            self.pending = self.source.read(self.chunk_size) or b""
            if not self.pending:
                chan.shutdown_write()
                self.done = True
                return True
        sent = chan.send(self.pending)
        self.pending = self.pending[sent:]
        return True


def _feed_in_background(chan: paramiko.Channel, source: IO[bytes], chunk_size: int) -> threading.Thread:
    def feed():
        try:
            while True:
                chunk = source.read(chunk_size)
                if not chunk:
                    break
                chan.sendall(chunk)
            chan.shutdown_write()
        except (OSError, EOFError) as e:
            logger.debug(f"Input feeder stopped: {e}")

    thread = threading.Thread(target=feed, name="sshwire-input", daemon=True)
    thread.start()
    return thread


def _run_buffered(
    channel: Channel,
    source: Optional[IO[bytes]],
    poll_interval: float,
    buffer_size: int,
) -> tuple[int, bytes, bytes]:
    """Poll until the channel disconnects. Returns (exit, out, err)."""
    chan = channel.raw
    out = bytearray()
    err = bytearray()
    pump = _InputPump(source, buffer_size)
    if source is None:
        # No stdin: the remote sees EOF straight away
        chan.shutdown_write()

    while True:
        busy = pump.step(chan)
        if chan.recv_ready():
            out += chan.recv(buffer_size)
            busy = True
        if chan.recv_stderr_ready():
            err += chan.recv_stderr(buffer_size)
            busy = True
        if not channel.connected:
            break
        if not busy:
            time.sleep(poll_interval)

    while chan.recv_ready():
        out += chan.recv(buffer_size)
    while chan.recv_stderr_ready():
        err += chan.recv_stderr(buffer_size)

    return channel.exit_status, bytes(out), bytes(err)


def _streams(channel: Channel, source: Optional[IO[bytes]], buffer_size: int) -> ChannelStreams:
    chan = channel.raw
    streams = ChannelStreams(
        channel=channel,
        out_stream=chan.makefile("rb", buffer_size),
        err_stream=chan.makefile_stderr("rb", buffer_size),
    )
    if source is None:
        streams.in_stream = chan.makefile_stdin("wb", buffer_size)
    else:
        _feed_in_background(chan, source, buffer_size)
    return streams


def _run(
    channel: Channel,
    input: Input,
    out: str,
    pty: Optional[bool],
    agent_forwarding: Optional[bool],
    buffer_size: Optional[int],
    context: Optional[SshContext],
) -> Union[ExecResult, ChannelStreams]:
    context = resolve_context(context)
    buffer_size = buffer_size or context.piped_stream_buffer_size
    if pty is not None:
        channel.pty = bool(pty)
    if agent_forwarding is not None:
        channel.agent_forwarding = bool(agent_forwarding)

    source = _input_stream(input)
    try:
        channel.connect()
    except (paramiko.SSHException, OSError, EOFError) as e:
        channel.disconnect()
        raise SshError(f"Could not start {channel.kind.value} channel: {e}") from e

    if out == OUT_STREAM:
        return _streams(channel, source, buffer_size)

    try:
        status, out_bytes, err_bytes = _run_buffered(channel, source, context.poll_interval, buffer_size)
    finally:
        channel.disconnect()
    return ExecResult(status, _decode(out_bytes, out), _decode(err_bytes, out))


def ssh_exec(
    session: BaseSession,
    cmd: str,
    input: Input = None,
    out: str = "utf-8",
    *,
    pty: Optional[bool] = None,
    agent_forwarding: Optional[bool] = None,
    buffer_size: Optional[int] = None,
    context: Optional[SshContext] = None,
) -> Union[ExecResult, ChannelStreams]:
    """
    Run a command on an exec channel.

    Args:
        input: None, str, bytes or a binary file object for stdin
        out: an encoding name, "bytes", or "stream"

    Returns:
        ExecResult once the command finished, or ChannelStreams right after
        the channel connects when out="stream".
    """
    channel = open_channel(session, ChannelKind.EXEC)
    channel.command = cmd
    logger.debug(f"exec {cmd!r}")
    return _run(channel, input, out, pty, agent_forwarding, buffer_size, context)


def ssh_shell(
    session: BaseSession,
    input: Input,
    out: str = "utf-8",
    *,
    pty: Optional[bool] = None,
    agent_forwarding: Optional[bool] = None,
    buffer_size: Optional[int] = None,
    context: Optional[SshContext] = None,
) -> Union[ExecResult, ChannelStreams]:
    """
    Feed input to a shell channel.

    String input gets ``;exit $?;`` appended so the shell exits with the
    status of the last command. Output is stdout and stderr combined.
    """
    if isinstance(input, str):
        input = shell_input(input)
    channel = open_channel(session, ChannelKind.SHELL)
    return _run(channel, input, out, pty, agent_forwarding, buffer_size, context)


CHANNEL_OPTIONS = ("pty", "agent_forwarding", "buffer_size")


def ssh(
    target,
    cmd: Optional[str] = None,
    input: Input = None,
    out: str = "utf-8",
    *,
    context: Optional[SshContext] = None,
    **options,
) -> Union[ExecResult, ChannelStreams]:
    """
    Execute commands over ssh.

    ``target`` is a hostname or a session. With ``cmd`` the command runs on
    an exec channel, otherwise a shell is started and fed ``input``.
    For a hostname, keywords other than pty/agent_forwarding/buffer_size
    configure the implicit session; buffered results disconnect it, and
    streaming results carry it in ``ChannelStreams.session``.
    """
    from .target import HostTarget, SessionTarget, as_target

    channel_opts = {k: options.pop(k) for k in CHANNEL_OPTIONS if k in options}
    context = resolve_context(context)
    target = as_target(target, **options)

    def run(s: BaseSession):
        if cmd is not None:
            return ssh_exec(s, cmd, input, out, context=context, **channel_opts)
        return ssh_shell(s, input, out, context=context, **channel_opts)

    if isinstance(target, HostTarget):
        s = make_session(None, target.hostname, context=context, **target.options)
        if out == OUT_STREAM:
            s.connect()
            try:
                result = run(s)
            except Exception:
                s.disconnect()
                raise
            result.session = s
            return result
        with with_connection(s):
            return run(s)

    if isinstance(target, SessionTarget):
        s = target.session
        if s.connected or out == OUT_STREAM:
            s.connect()
            return run(s)
        with with_connection(s):
            return run(s)

    raise TypeError("ssh needs a hostname or a session, not a channel")


def ssh_sftp(session: BaseSession) -> SftpChannel:
    """Open and connect an SFTP channel."""
    if not session.connected:
        raise SshError("ssh_sftp needs a connected session")
    channel = sftp_channel(session)
    try:
        channel.connect()
    except (paramiko.SSHException, OSError, EOFError) as e:
        channel.disconnect()
        raise SshError(f"Could not start sftp channel: {e}") from e
    return channel
