"""Tests for sshwire.session.forward - local and remote port forwarding."""

import socket
import threading
from unittest.mock import MagicMock

import paramiko
import pytest

from sshwire.errors import SshError
from sshwire.session.forward import (
    PortForwards,
    RemoteForward,
    RemoteForwardDispatcher,
    forward_local_port,
    forward_remote_port,
    local_port_forward,
    remote_port_forward,
    unforward_local_port,
    unforward_remote_port,
)
from sshwire.session.ssh import Session


class TestLocalForward:
    def test_os_assigned_port_listens(self, connected_session):
        port = forward_local_port(connected_session, 0, 80, "intranet")
        try:
            assert port > 0
            forward = connected_session.forwards.local[port]
            assert forward.active
            assert (forward.remote_host, forward.remote_port) == ("intranet", 80)
            with socket.create_connection(("127.0.0.1", port), timeout=2):
                pass
        finally:
            unforward_local_port(connected_session, port)
        assert port not in connected_session.forwards.local

    def test_tunnels_to_direct_tcpip_channel(self, connected_session, transport):
        opened = threading.Event()

        def open_channel(*args):
            opened.set()
            raise paramiko.ChannelException(1, "Administratively prohibited")

        transport.open_channel.side_effect = open_channel

        with local_port_forward(connected_session, 0, 5432, "db") as port:
            with socket.create_connection(("127.0.0.1", port), timeout=2):
                assert opened.wait(2)

        transport.open_channel.assert_called_once()
        args = transport.open_channel.call_args.args
        assert args[0] == "direct-tcpip"
        assert args[1] == ("db", 5432)

    def test_duplicate_port_rejected(self, connected_session):
        port = forward_local_port(connected_session, 0, 80)
        try:
            with pytest.raises(ValueError, match="already forwarded"):
                forward_local_port(connected_session, port, 81)
        finally:
            unforward_local_port(connected_session, port)

    def test_unforward_unknown_port(self, connected_session):
        unforward_local_port(connected_session, 1)

    def test_requires_connected_session(self, agent):
        with pytest.raises(SshError):
            forward_local_port(Session(agent, "h"), 0, 80)

    def test_disconnect_stops_forwards(self, connected_session):
        port = forward_local_port(connected_session, 0, 80)
        forward = connected_session.forwards.local[port]
        connected_session.disconnect()
        assert not forward.active


class TestRemoteForward:
    def test_request_and_cancel(self, connected_session, transport):
        transport.request_port_forward.return_value = 40022

        with remote_port_forward(connected_session, 0, 22) as port:
            assert port == 40022
            forward = connected_session.forwards.remote[40022]
            assert forward == RemoteForward(40022, "localhost", 22)

        transport.cancel_port_forward.assert_called_once_with("localhost", 40022)
        assert connected_session.forwards.remote == {}

    def test_handler_is_shared_dispatcher(self, connected_session, transport):
        transport.request_port_forward.side_effect = [9001, 9002]
        forward_remote_port(connected_session, 9001, 8001)
        forward_remote_port(connected_session, 9002, 8002)

        handlers = {c.kwargs["handler"] for c in transport.request_port_forward.call_args_list}
        assert len(handlers) == 1
        unforward_remote_port(connected_session, 9001)
        unforward_remote_port(connected_session, 9002)

    def test_duplicate_remote_port(self, transport):
        forwards = PortForwards()
        transport.request_port_forward.return_value = 9000
        forwards.add_remote(transport, 9000, "localhost", 80)
        with pytest.raises(ValueError):
            forwards.add_remote(transport, 9000, "localhost", 81)

    def test_cancel_skipped_on_dead_transport(self, transport):
        forwards = PortForwards()
        transport.request_port_forward.return_value = 9000
        forwards.add_remote(transport, 9000, "localhost", 80)
        transport.is_active.return_value = False
        forwards.remove_remote(transport, 9000)
        transport.cancel_port_forward.assert_not_called()


class TestDispatcher:
    def test_unknown_port_closes_channel(self):
        dispatcher = RemoteForwardDispatcher()
        chan = MagicMock(spec=paramiko.Channel)
        dispatcher(chan, ("1.2.3.4", 5555), ("0.0.0.0", 9999))
        chan.close.assert_called_once()

    def test_unreachable_local_target_closes_channel(self):
        # Grab a free port, then release it so nothing listens there
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            free_port = s.getsockname()[1]

        dispatcher = RemoteForwardDispatcher()
        forward = RemoteForward(9000, "127.0.0.1", free_port)
        chan = MagicMock(spec=paramiko.Channel)
        dispatcher._pump(chan, forward)
        chan.close.assert_called_once()
