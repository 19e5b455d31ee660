"""
SCP over an exec channel running the remote ``scp`` binary.

Sending runs ``scp -t <path>`` remotely (sink mode) and receiving runs
``scp -f <paths>`` (source mode). Both sides exchange newline terminated
control lines, each acknowledged with a single status byte:

    C<mode> <length> <name>    file follows, <length> raw bytes then \\0
    D<mode> 0 <name>           enter directory
    E                          leave directory
    T<mtime> 0 <atime> 0       times for the next C or D line

    \\0 ok, \\1 error, \\2 fatal error; a non-zero byte is followed by a
    message up to the next newline.

Modes are four digit octal, everything else decimal. Names are sent as is;
there is no escaping in this protocol.
"""

from __future__ import annotations
import logging
import os
import re
import stat
from dataclasses import dataclass
from typing import IO, Iterable, Optional, Sequence, Union

from .channel import ssh_exec
from .context import SshContext, TRACE, resolve_context
from .errors import (
    DirectoryCopyWithoutRecursiveFlagError,
    MultipleFilesToSingleDestinationError,
    ScpError,
    ScpProtocolError,
)
from .target import as_target, target_session

logger = logging.getLogger(__name__)

DEFAULT_FILE_MODE = 0o644
DEFAULT_DIR_MODE = 0o755

END_LINE = "E"

_COPY_LINE = re.compile(r"([CD])([0-7]{4}) (\d+) (.*)")
_TIMES_LINE = re.compile(r"T(\d+) (\d+) (\d+) (\d+)")

PathArg = Union[str, os.PathLike]


@dataclass
class ScpHeader:
    """A parsed C or D line."""
    kind: str
    mode: int
    length: int
    name: str


@dataclass
class ScpTimes:
    mtime: int
    atime: int


# =============================================================================
# Framing
# =============================================================================

def format_copy_line(mode: int, length: int, name: str) -> str:
    return f"C{mode & 0o7777:04o} {length} {name}"


def format_dir_line(mode: int, name: str) -> str:
    return f"D{mode & 0o7777:04o} 0 {name}"


def format_times_line(mtime: int, atime: int) -> str:
    return f"T{mtime} 0 {atime} 0"


def parse_copy_line(line: str) -> ScpHeader:
    """
    Parse ``C0644 12 name`` or ``D0755 0 name``.

    Raises:
        ScpProtocolError: malformed line, or a name that would escape the
            destination directory
    """
    match = _COPY_LINE.fullmatch(line.rstrip("\n"))
    if match is None:
        raise ScpProtocolError(f"Malformed scp copy line {line!r}", line=line)
    kind, mode, length, name = match.groups()
    if not name or "/" in name or name in (".", ".."):
        raise ScpProtocolError(f"Refusing unsafe scp file name {name!r}", line=line)
    return ScpHeader(kind, int(mode, 8), int(length), name)


def parse_times_line(line: str) -> ScpTimes:
    match = _TIMES_LINE.fullmatch(line.rstrip("\n"))
    if match is None:
        raise ScpProtocolError(f"Malformed scp times line {line!r}", line=line)
    mtime, _, atime, _ = match.groups()
    return ScpTimes(int(mtime), int(atime))


# =============================================================================
# Acknowledgements
# =============================================================================

def _read_line(recv: IO[bytes]) -> str:
    data = bytearray()
    while True:
        b = recv.read(1)
        if not b or b == b"\n":
            break
        data += b
    return data.decode("utf-8", errors="replace")


def send_ack(send: IO[bytes], code: int = 0) -> None:
    send.write(bytes([code]))
    send.flush()


def receive_ack(recv: IO[bytes]) -> None:
    """
    Read one status byte.

    Raises:
        ScpError: non-zero status (code 1 or 2, with the remote message),
            or end of stream (code -1)
    """
    b = recv.read(1)
    if not b:
        raise ScpError.from_ack(-1)
    code = b[0]
    if code != 0:
        raise ScpError.from_ack(code, _read_line(recv))


def send_command(send: IO[bytes], recv: IO[bytes], line: str) -> None:
    """Write a control line and wait for its acknowledgement."""
    send.write(f"{line}\n".encode("utf-8"))
    send.flush()
    logger.log(TRACE, f"Sent command {line}")
    receive_ack(recv)
    logger.log(TRACE, "Received ACK")


def receive_command(recv: IO[bytes]) -> Optional[str]:
    """
    Read the next control line, or None at end of stream.

    A leading error byte raises ScpError with the remote message.
    """
    first = recv.read(1)
    if not first:
        return None
    if first[0] in (1, 2):
        raise ScpError.from_ack(first[0], _read_line(recv))
    if first == b"\n":
        raise ScpProtocolError("Empty scp control line", line="")
    line = first.decode("utf-8", errors="replace") + _read_line(recv)
    logger.log(TRACE, f"Received command {line}")
    return line


# =============================================================================
# Send (scp -t)
# =============================================================================

def _times_line(path: str) -> str:
    # atime is sent as mtime
    mtime = int(os.stat(path).st_mtime)
    return format_times_line(mtime, mtime)


def send_file(
    send: IO[bytes],
    recv: IO[bytes],
    path: str,
    *,
    preserve: bool = False,
    mode: int = DEFAULT_FILE_MODE,
    buffer_size: int = 16384,
) -> None:
    st = os.stat(path)
    if preserve:
        send_command(send, recv, _times_line(path))
        mode = stat.S_IMODE(st.st_mode)
    name = os.path.basename(os.path.normpath(path))
    length = st.st_size
    send_command(send, recv, format_copy_line(mode, length, name))

    logger.debug(f"Sending {path} ({length} bytes)")
    remaining = length
    with open(path, "rb") as f:
        while remaining:
            chunk = f.read(min(buffer_size, remaining))
            if not chunk:
                raise ScpError(f"{path} shrank while sending ({remaining} bytes short)")
            send.write(chunk)
            remaining -= len(chunk)
    send_ack(send)
    logger.log(TRACE, "Receiving ACK after send")
    receive_ack(recv)


def send_directory(
    send: IO[bytes],
    recv: IO[bytes],
    path: str,
    *,
    preserve: bool = False,
    mode: int = DEFAULT_FILE_MODE,
    dir_mode: int = DEFAULT_DIR_MODE,
    buffer_size: int = 16384,
) -> None:
    logger.debug(f"Sending directory {path}")
    if preserve:
        send_command(send, recv, _times_line(path))
        dir_mode = stat.S_IMODE(os.stat(path).st_mode)
    send_command(send, recv, format_dir_line(dir_mode, os.path.basename(os.path.normpath(path))))

    for name in sorted(os.listdir(path)):
        child = os.path.join(path, name)
        if os.path.isdir(child):
            send_directory(send, recv, child, preserve=preserve, mode=mode,
                           dir_mode=dir_mode, buffer_size=buffer_size)
        elif os.path.isfile(child):
            send_file(send, recv, child, preserve=preserve, mode=mode, buffer_size=buffer_size)
        else:
            logger.warning(f"Skipping {child}: not a regular file or directory")

    send_command(send, recv, END_LINE)


def send_paths(
    send: IO[bytes],
    recv: IO[bytes],
    paths: Iterable[str],
    *,
    preserve: bool = False,
    mode: int = DEFAULT_FILE_MODE,
    dir_mode: int = DEFAULT_DIR_MODE,
    buffer_size: int = 16384,
) -> None:
    """Source side of the protocol: wait for the sink, then send each path."""
    logger.log(TRACE, "Receive initial ACK")
    receive_ack(recv)
    for path in paths:
        if os.path.isdir(path):
            send_directory(send, recv, path, preserve=preserve, mode=mode,
                           dir_mode=dir_mode, buffer_size=buffer_size)
        else:
            send_file(send, recv, path, preserve=preserve, mode=mode, buffer_size=buffer_size)


# =============================================================================
# Receive (scp -f)
# =============================================================================

def _sink_file(send: IO[bytes], recv: IO[bytes], path: str, length: int, buffer_size: int) -> None:
    logger.debug(f"Sinking {length} bytes to file {path}")
    remaining = length
    with open(path, "wb") as f:
        while remaining:
            chunk = recv.read(min(buffer_size, remaining))
            if not chunk:
                raise ScpError.from_ack(-1, f"{remaining} bytes of {path} missing")
            f.write(chunk)
            remaining -= len(chunk)
    receive_ack(recv)
    logger.log(TRACE, "Received ACK after sink of file")
    send_ack(send)


def _apply_times(path: str, times: Optional[ScpTimes]) -> None:
    if times is not None:
        os.utime(path, (times.atime, times.mtime))


def receive_paths(
    send: IO[bytes],
    recv: IO[bytes],
    local_path: str,
    *,
    preserve: bool = False,
    buffer_size: int = 16384,
) -> None:
    """
    Sink side of the protocol: signal readiness, then write what the source
    sends under ``local_path`` until it closes the stream.
    """
    send_ack(send)
    logger.log(TRACE, "Sent initial ACK")

    current = local_path
    pending_times: Optional[ScpTimes] = None
    # (parent directory, directory entered, its mode, its times)
    stack: list[tuple[str, str, int, Optional[ScpTimes]]] = []

    while True:
        line = receive_command(recv)
        if line is None:
            break

        if line.startswith("T"):
            pending_times = parse_times_line(line)
            send_ack(send)

        elif line.startswith("C"):
            header = parse_copy_line(line)
            dest = os.path.join(current, header.name) if os.path.isdir(current) else current
            send_ack(send)
            _sink_file(send, recv, dest, header.length, buffer_size)
            if preserve:
                os.chmod(dest, header.mode)
            _apply_times(dest, pending_times)
            pending_times = None

        elif line.startswith("D"):
            header = parse_copy_line(line)
            if not stack and not os.path.exists(current):
                dest = current
            elif os.path.isdir(current):
                dest = os.path.join(current, header.name)
            else:
                raise ScpError(f"Cannot receive directory {header.name} into file {current}")
            if os.path.exists(dest) and not os.path.isdir(dest):
                os.remove(dest)
            if not os.path.exists(dest):
                os.mkdir(dest)
            send_ack(send)
            stack.append((current, dest, header.mode, pending_times))
            current = dest
            pending_times = None

        elif line == END_LINE:
            if not stack:
                raise ScpProtocolError("Unbalanced scp end of directory", line=line)
            send_ack(send)
            current, finished, dir_mode, times = stack.pop()
            # Directory mode is applied once its children are written
            if preserve:
                os.chmod(finished, dir_mode)
            _apply_times(finished, times)

        else:
            raise ScpProtocolError(f"Unknown scp command {line!r}", line=line)


# =============================================================================
# Public API
# =============================================================================

def _as_list(paths) -> list[str]:
    if isinstance(paths, (str, os.PathLike)):
        return [os.fspath(paths)]
    return [os.fspath(p) for p in paths]


def scp_command(
    direction: str,
    paths: Sequence[str],
    *,
    recursive: bool = False,
    preserve: bool = False,
    remote_flags: Optional[str] = None,
) -> str:
    """Remote command line. Paths are not quoted so remote globs expand."""
    parts = ["scp"]
    if remote_flags is not None:
        if remote_flags:
            parts.append(remote_flags)
    else:
        if recursive:
            parts.append("-r")
        if preserve:
            parts.append("-p")
    parts.append(direction)
    parts.extend(paths)
    return " ".join(parts)


def scp_to(
    target,
    local_paths: Union[PathArg, Sequence[PathArg]],
    remote_path: str,
    *,
    recursive: bool = False,
    preserve: bool = False,
    mode: int = DEFAULT_FILE_MODE,
    dir_mode: int = DEFAULT_DIR_MODE,
    remote_flags: Optional[str] = None,
    buffer_size: Optional[int] = None,
    context: Optional[SshContext] = None,
    **session_options,
) -> None:
    """
    Copy local path(s) to remote_path via scp.

    ``target`` is a hostname (an implicit session is opened and closed), a
    session or a jump session. Directories need ``recursive``. With
    ``preserve`` the real mode bits and mtime are sent (atime = mtime).

    Raises:
        DirectoryCopyWithoutRecursiveFlagError: before anything connects
        ScpError: the remote side reported an error
    """
    paths = _as_list(local_paths)
    for path in paths:
        if os.path.isdir(path):
            if not recursive:
                raise DirectoryCopyWithoutRecursiveFlagError(path)
        elif not os.path.isfile(path):
            raise FileNotFoundError(f"No such local file: {path}")

    context = resolve_context(context)
    buffer_size = buffer_size or context.piped_stream_buffer_size
    cmd = scp_command("-t", [remote_path], recursive=recursive, preserve=preserve,
                      remote_flags=remote_flags)
    logger.debug(f"scp-to {' '.join(paths)} {remote_path}: {cmd}")

    with target_session(as_target(target, **session_options), context) as s:
        streams = ssh_exec(s, cmd, None, "stream", buffer_size=buffer_size, context=context)
        try:
            send_paths(streams.in_stream, streams.out_stream, paths, preserve=preserve,
                       mode=mode, dir_mode=dir_mode, buffer_size=buffer_size)
            streams.in_stream.close()
        finally:
            streams.channel.disconnect()


def scp_from(
    target,
    remote_paths: Union[str, Sequence[str]],
    local_path: PathArg,
    *,
    recursive: bool = False,
    preserve: bool = False,
    remote_flags: Optional[str] = None,
    buffer_size: Optional[int] = None,
    context: Optional[SshContext] = None,
    **session_options,
) -> None:
    """
    Copy remote path(s) to local_path via scp.

    Raises:
        MultipleFilesToSingleDestinationError: several remote paths and
            local_path is an existing file; raised before anything connects
        ScpError: the remote side reported an error
    """
    remote_paths = [remote_paths] if isinstance(remote_paths, str) else list(remote_paths)
    local_path = os.fspath(local_path)
    if len(remote_paths) > 1 and os.path.exists(local_path) and not os.path.isdir(local_path):
        raise MultipleFilesToSingleDestinationError(local_path)

    context = resolve_context(context)
    buffer_size = buffer_size or context.piped_stream_buffer_size
    cmd = scp_command("-f", remote_paths, recursive=recursive, preserve=preserve,
                      remote_flags=remote_flags)
    logger.debug(f"scp-from {' '.join(remote_paths)} {local_path}: {cmd}")

    with target_session(as_target(target, **session_options), context) as s:
        streams = ssh_exec(s, cmd, None, "stream", buffer_size=buffer_size, context=context)
        try:
            receive_paths(streams.in_stream, streams.out_stream, local_path,
                          preserve=preserve, buffer_size=buffer_size)
            streams.in_stream.close()
        finally:
            streams.channel.disconnect()
