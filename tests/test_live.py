"""
Tests against a real sshd. Skipped unless SSHWIRE_TEST_HOST is set.

    SSHWIRE_TEST_HOST=localhost SSHWIRE_TEST_USER=me pytest tests/test_live.py

Authentication uses the system ssh-agent and SSHWIRE_TEST_KEY if given;
host keys are accepted without checking.
"""

import os

import pytest

from sshwire import (
    SshContext,
    scp_from,
    scp_to,
    sftp,
    add_identity,
    session,
    ssh,
    ssh_agent,
    ssh_sftp,
    with_channel_connection,
    with_connection,
)

HOST = os.environ.get("SSHWIRE_TEST_HOST")

pytestmark = pytest.mark.skipif(not HOST, reason="SSHWIRE_TEST_HOST not set")


@pytest.fixture
def live_context(tmp_path):
    agent = ssh_agent(known_hosts_path=tmp_path / "known_hosts")
    if os.environ.get("SSHWIRE_TEST_KEY"):
        add_identity(agent, private_key_path=os.environ["SSHWIRE_TEST_KEY"])
    return SshContext(agent=agent, session_options={"strict-host-key-checking": "no"})


@pytest.fixture
def live_session(live_context):
    s = session(
        None,
        HOST,
        context=live_context,
        username=os.environ.get("SSHWIRE_TEST_USER"),
        port=int(os.environ.get("SSHWIRE_TEST_PORT", "22")),
    )
    with with_connection(s):
        yield s


def test_exec(live_session):
    result = ssh(live_session, "echo hello; echo oops >&2; exit 3")
    assert result.exit == 3
    assert result.out == "hello\n"
    assert result.err == "oops\n"


def test_exec_stdin(live_session):
    assert ssh(live_session, "cat", input="piped").out == "piped"


def test_shell(live_session):
    result = ssh(live_session, input="echo from-shell")
    assert "from-shell" in result.out
    assert result.exit == 0


def test_sftp_round_trip(live_session, tmp_path):
    (tmp_path / "up.txt").write_bytes(b"sftp payload")
    remote = f"/tmp/sshwire-live-{os.getpid()}.txt"
    sftp(live_session, "put", str(tmp_path / "up.txt"), remote)
    try:
        assert sftp(live_session, "get", remote) == b"sftp payload"
    finally:
        sftp(live_session, "rm", remote)


def test_sftp_cd_pwd_ls(live_session):
    before = sorted(str(e.filename) for e in sftp(live_session, "ls", "/"))
    channel = ssh_sftp(live_session)
    with with_channel_connection(channel):
        sftp(channel, "cd", "/")
        assert sftp(channel, "pwd") == "/"
        assert sorted(str(e.filename) for e in sftp(channel, "ls")) == before


def test_scp_round_trip(live_session, tmp_path):
    src = tmp_path / "tree"
    (src / "sub").mkdir(parents=True)
    (src / "sub" / "f.txt").write_bytes(b"scp payload")
    remote = f"/tmp/sshwire-live-{os.getpid()}"
    ssh(live_session, f"mkdir -p {remote}")
    try:
        scp_to(live_session, str(src), remote, recursive=True)
        back = tmp_path / "back"
        scp_from(live_session, f"{remote}/tree", str(back), recursive=True)
        assert (back / "sub" / "f.txt").read_bytes() == b"scp payload"
    finally:
        ssh(live_session, f"rm -rf {remote}")
