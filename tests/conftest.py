"""
Shared fixtures: an isolated default context, a session wired to a mocked
transport, and a scriptable stand-in for paramiko channels.
"""

import io
import os
import threading
from unittest.mock import MagicMock

import paramiko
import pytest

from sshwire.context import SshContext, reset_default_context, set_default_context
from sshwire.identity import SshAgent
from sshwire.session.base import SessionState
from sshwire.session.ssh import Session


class FakeChannel:
    """
    Enough of paramiko.Channel for the channel runner.

    Output is available immediately. With ``echo`` the stdin bytes are
    appended to stdout and the command only finishes at stdin EOF.
    """

    def __init__(self, out=b"", err=b"", status=0, echo=False):
        self._out = bytearray(out)
        self._err = bytearray(err)
        self.status = status
        self.echo = echo
        self.closed = False
        self.eof_received = not echo
        self.sent = bytearray()
        self.command = None
        self.pty = None
        self.combined = False
        self.subsystem = None
        self.shell = False
        self.write_shutdown = False

    # setup
    def exec_command(self, command):
        self.command = command

    def get_pty(self, term="vt100", **kwargs):
        self.pty = term

    def set_combine_stderr(self, combine):
        self.combined = combine

    def invoke_shell(self):
        self.shell = True

    def invoke_subsystem(self, name):
        self.subsystem = name

    # status
    def exit_status_ready(self):
        return self.eof_received

    def recv_exit_status(self):
        return self.status

    # output
    def recv_ready(self):
        return bool(self._out)

    def recv(self, n):
        data, self._out = bytes(self._out[:n]), self._out[n:]
        return data

    def recv_stderr_ready(self):
        return bool(self._err)

    def recv_stderr(self, n):
        data, self._err = bytes(self._err[:n]), self._err[n:]
        return data

    # input
    def send_ready(self):
        return not self.write_shutdown

    def send(self, data):
        self.sent += data
        if self.echo:
            self._out += data
        return len(data)

    def sendall(self, data):
        self.send(data)

    def shutdown_write(self):
        self.write_shutdown = True
        self.eof_received = True

    # files
    def makefile(self, mode="rb", bufsize=-1):
        return io.BytesIO(bytes(self._out))

    def makefile_stderr(self, mode="rb", bufsize=-1):
        return io.BytesIO(bytes(self._err))

    def makefile_stdin(self, mode="wb", bufsize=-1):
        return io.BytesIO()

    def close(self):
        self.closed = True


@pytest.fixture
def agent(tmp_path):
    return SshAgent(use_system_agent=False, known_hosts_path=tmp_path / "known_hosts")


@pytest.fixture(autouse=True)
def context(tmp_path):
    """Keeps tests away from ~/.sshwire and the system ssh-agent."""
    ctx = SshContext(
        agent=SshAgent(use_system_agent=False, known_hosts_path=tmp_path / "known_hosts"),
        poll_interval=0.001,
    )
    set_default_context(ctx)
    yield ctx
    reset_default_context()


@pytest.fixture
def transport():
    t = MagicMock(spec=paramiko.Transport)
    t.is_active.return_value = True
    return t


@pytest.fixture
def connected_session(agent, transport, context):
    """A Session that believes it is connected over a mocked transport."""
    s = Session(agent, "example.com", username="alice", context=context)
    s._transport = transport
    s._set_state(SessionState.CONNECTED)
    return s


@pytest.fixture
def pipe_pair():
    """Two one-way byte pipes, as (reader, writer) pairs, closed afterwards."""
    opened = []

    def make():
        r, w = os.pipe()
        reader, writer = os.fdopen(r, "rb"), os.fdopen(w, "wb")
        opened.extend([reader, writer])
        return reader, writer

    yield make
    for f in opened:
        if not f.closed:
            f.close()


def run_in_thread(target, *args, **kwargs):
    """Start target in a thread; returns (thread, errors list)."""
    errors = []

    def wrapper():
        try:
            target(*args, **kwargs)
        except Exception as e:
            errors.append(e)

    thread = threading.Thread(target=wrapper, daemon=True)
    thread.start()
    return thread, errors
