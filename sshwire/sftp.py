"""
SFTP command dispatcher.

Maps the classic sftp client vocabulary onto an SFTP channel:

    ls cd lcd pwd lpwd chmod chown chgrp rm rmdir mkdir stat lstat rename
    symlink readlink realpath get-home get-server-version get-extension
    get put

Usage:
    sftp("example.com", "put", "build.tar.gz", "/tmp/build.tar.gz")

    with with_connection(session):
        channel = ssh_sftp(session)
        with with_channel_connection(channel):
            sftp(channel, "cd", "/var/log")
            names = [str(entry) for entry in sftp(channel, "ls")]
"""

from __future__ import annotations
import io
import logging
import os
import posixpath
import stat as stat_module
from typing import IO, Callable, Optional, Union

import paramiko

from .channel import SftpChannel, ssh_sftp, with_channel_connection
from .context import SshContext
from .errors import SshError, TransferCancelledError, UnsupportedCommandError
from .target import ChannelTarget, as_target, target_session

logger = logging.getLogger(__name__)

TRANSFER_CHUNK_SIZE = 32768

TRANSFER_MODES = ("overwrite", "resume", "append")

Local = Union[str, os.PathLike, IO[bytes]]


class ProgressMonitor:
    """
    Transfer progress callbacks. Subclass and override what you need.

    ``count`` returning False cancels the transfer.
    """

    def init(self, operation: str, source: str, destination: str, total: int) -> None:
        pass

    def count(self, transferred: int) -> bool:
        return True

    def end(self) -> None:
        pass


class LoggingMonitor(ProgressMonitor):
    """Logs start and end of each transfer at info level."""

    def init(self, operation, source, destination, total):
        self._label = f"{operation} {source} -> {destination}"
        self._total = total
        self._done = 0
        logger.info(f"Starting {self._label} ({total} bytes)")

    def count(self, transferred):
        self._done += transferred
        return True

    def end(self):
        logger.info(f"Finished {self._label} ({self._done}/{self._total} bytes)")


# =============================================================================
# Helpers
# =============================================================================

def _local_path(channel: SftpChannel, path) -> str:
    path = os.path.expanduser(os.fspath(path))
    return os.path.normpath(os.path.join(channel.local_cwd, path))


def _is_stream(value) -> bool:
    return hasattr(value, "read") or hasattr(value, "write")


def _mode_bits(mode) -> int:
    if isinstance(mode, str):
        return int(mode, 8)
    return int(mode)


def _remote_is_dir(client: paramiko.SFTPClient, path: str) -> bool:
    try:
        return stat_module.S_ISDIR(client.stat(path).st_mode)
    except IOError:
        return False


def _remote_size(client: paramiko.SFTPClient, path: str) -> int:
    try:
        return client.stat(path).st_size or 0
    except IOError:
        return 0


def _copy(
    reader: IO[bytes],
    writer: IO[bytes],
    monitor: Optional[ProgressMonitor],
    operation: str,
    source: str,
) -> int:
    total = 0
    try:
        while True:
            chunk = reader.read(TRANSFER_CHUNK_SIZE)
            if not chunk:
                break
            writer.write(chunk)
            total += len(chunk)
            if monitor is not None and monitor.count(len(chunk)) is False:
                raise TransferCancelledError(operation, source)
    finally:
        if monitor is not None:
            monitor.end()
    return total


def _check_mode(mode: Optional[str]) -> str:
    mode = mode or "overwrite"
    if mode not in TRANSFER_MODES:
        raise ValueError(f"Unknown transfer mode {mode!r}, expected one of {TRANSFER_MODES}")
    return mode


# =============================================================================
# Commands
# =============================================================================

def _ls(channel, path=".", **_):
    return channel.client.listdir_attr(path)


def _cd(channel, path, **_):
    channel.client.chdir(path)


def _lcd(channel, path, **_):
    target = _local_path(channel, path)
    if not os.path.isdir(target):
        raise NotADirectoryError(f"No such directory: {target}")
    channel.local_cwd = target


def _pwd(channel, **_):
    return channel.client.getcwd() or channel.client.normalize(".")


def _lpwd(channel, **_):
    return channel.local_cwd


def _chmod(channel, mode, path, **_):
    channel.client.chmod(path, _mode_bits(mode))


def _chown(channel, uid, path, **_):
    attrs = channel.client.stat(path)
    channel.client.chown(path, int(uid), attrs.st_gid)


def _chgrp(channel, gid, path, **_):
    attrs = channel.client.stat(path)
    channel.client.chown(path, attrs.st_uid, int(gid))


def _rm(channel, path, **_):
    channel.client.remove(path)


def _rmdir(channel, path, **_):
    channel.client.rmdir(path)


def _mkdir(channel, path, mode=0o777, **_):
    channel.client.mkdir(path, _mode_bits(mode))


def _stat(channel, path, **_):
    return channel.client.stat(path)


def _lstat(channel, path, **_):
    return channel.client.lstat(path)


def _rename(channel, old_path, new_path, **_):
    channel.client.rename(old_path, new_path)


def _symlink(channel, old_path, new_path, **_):
    channel.client.symlink(old_path, new_path)


def _readlink(channel, path, **_):
    return channel.client.readlink(path)


def _realpath(channel, path, **_):
    return channel.client.normalize(path)


def _get_home(channel, **_):
    return channel.home


def _get_server_version(channel, **_):
    return channel.client.server_version


def _get_extension(channel, name, **_):
    return (channel.client.extensions or {}).get(name)


def _get(
    channel: SftpChannel,
    source: str,
    destination: Optional[Local] = None,
    *,
    monitor: Optional[ProgressMonitor] = None,
    mode: Optional[str] = None,
    **_,
):
    """
    Download ``source``. Without a destination the content is returned as
    bytes; otherwise it is written to a local path (a directory keeps the
    remote name) or a binary file object.
    """
    mode = _check_mode(mode)
    client = channel.client
    size = _remote_size(client, source)

    if destination is None:
        buffer = io.BytesIO()
        _get(channel, source, buffer, monitor=monitor, mode="overwrite")
        return buffer.getvalue()

    if _is_stream(destination):
        label, offset, local = "<stream>", 0, destination
        close_local = False
    else:
        label = _local_path(channel, destination)
        if os.path.isdir(label):
            label = os.path.join(label, posixpath.basename(source))
        offset = 0
        if mode == "resume" and os.path.exists(label):
            offset = os.path.getsize(label)
            if offset > size:
                raise ValueError(f"Local file {label} is larger than remote {source}")
        local = open(label, "wb" if mode == "overwrite" else "ab")
        close_local = True

    try:
        if monitor is not None:
            monitor.init("get", source, label, size)
        with client.open(source, "rb") as remote:
            if offset:
                remote.seek(offset)
                if monitor is not None and monitor.count(offset) is False:
                    monitor.end()
                    raise TransferCancelledError("get", source)
            remote.prefetch(size)
            _copy(remote, local, monitor, "get", source)
    finally:
        if close_local:
            local.close()
    logger.debug(f"get {source} -> {label} ({mode})")
    return None


def _put(
    channel: SftpChannel,
    source: Local,
    destination: Optional[str] = None,
    *,
    monitor: Optional[ProgressMonitor] = None,
    mode: Optional[str] = None,
    **_,
):
    """
    Upload a local path or binary file object to ``destination`` (a remote
    directory keeps the local name).
    """
    mode = _check_mode(mode)
    client = channel.client

    if _is_stream(source):
        label, local, close_local = "<stream>", source, False
        if destination is None:
            raise ValueError("put from a stream needs a destination")
        total = -1
    else:
        label = _local_path(channel, source)
        local = open(label, "rb")
        close_local = True
        total = os.path.getsize(label)
        if destination is None:
            destination = os.path.basename(label)

    try:
        if _remote_is_dir(client, destination):
            destination = posixpath.join(destination, os.path.basename(label))

        offset = 0
        if mode == "overwrite":
            remote_mode = "wb"
        elif mode == "append":
            remote_mode = "ab"
        else:
            offset = _remote_size(client, destination)
            remote_mode = "r+b" if offset else "wb"

        if monitor is not None:
            monitor.init("put", label, destination, total)
        with client.open(destination, remote_mode) as remote:
            remote.set_pipelined(True)
            if offset:
                local.seek(offset)
                remote.seek(offset)
                if monitor is not None and monitor.count(offset) is False:
                    monitor.end()
                    raise TransferCancelledError("put", label)
            _copy(local, remote, monitor, "put", label)
    finally:
        if close_local:
            local.close()
    logger.debug(f"put {label} -> {destination} ({mode})")
    return None


COMMANDS: dict[str, Callable] = {
    "ls": _ls,
    "cd": _cd,
    "lcd": _lcd,
    "pwd": _pwd,
    "lpwd": _lpwd,
    "chmod": _chmod,
    "chown": _chown,
    "chgrp": _chgrp,
    "rm": _rm,
    "rmdir": _rmdir,
    "mkdir": _mkdir,
    "stat": _stat,
    "lstat": _lstat,
    "rename": _rename,
    "symlink": _symlink,
    "readlink": _readlink,
    "realpath": _realpath,
    "get-home": _get_home,
    "get-server-version": _get_server_version,
    "get-extension": _get_extension,
    "get": _get,
    "put": _put,
}

TRANSFER_OPTIONS = ("monitor", "mode")


def command_name(cmd) -> str:
    """Normalise a command name; raises UnsupportedCommandError if unknown."""
    name = str(cmd).lower().replace("_", "-")
    if name not in COMMANDS:
        raise UnsupportedCommandError(cmd)
    return name


def sftp_command(channel: SftpChannel, cmd, *args, monitor=None, mode=None):
    """Run one command on a connected SFTP channel."""
    name = command_name(cmd)
    logger.debug(f"sftp {name} {args}")
    return COMMANDS[name](channel, *args, monitor=monitor, mode=mode)


def _ready(channel) -> SftpChannel:
    """A given channel is connected on first use; a closed one is refused."""
    if not isinstance(channel, SftpChannel):
        raise TypeError(f"sftp needs an SFTP channel, not a {channel.kind.value} channel")
    if channel.client is None:
        channel.connect()
    elif not channel.connected:
        raise SshError("sftp channel is not connected")
    return channel


def sftp(target, cmd, *args, context: Optional[SshContext] = None, **options):
    """
    Execute an SFTP command on a hostname, a session or an SFTP channel.

    For hostnames and sessions a transient channel is opened and always
    closed afterwards, as is an implicit session. ``monitor`` and ``mode``
    apply to get/put; any other keyword configures an implicit session.
    """
    name = command_name(cmd)
    transfer = {k: options.pop(k) for k in TRANSFER_OPTIONS if k in options}
    target = as_target(target, **options)

    if isinstance(target, ChannelTarget):
        return sftp_command(_ready(target.channel), name, *args, **transfer)

    with target_session(target, context) as s:
        channel = ssh_sftp(s)
        with with_channel_connection(channel):
            return sftp_command(channel, name, *args, **transfer)
