"""Tests for sshwire.context and sshwire.config."""

import logging

import pytest

from sshwire.config import ClientSettings, SettingsManager
from sshwire.context import (
    TRACE,
    SshContext,
    TransportLogFilter,
    default_context,
    get_transport_log_levels,
    install_transport_log_filter,
    set_default_context,
    transport_log_levels,
    using_agent,
    using_session_options,
)
from sshwire.identity import SshAgent
from sshwire.session.ssh import session


class TestSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        manager = SettingsManager(tmp_path / "config.yaml")
        assert manager.settings == ClientSettings()

    def test_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"
        manager = SettingsManager(path)
        manager.settings.session_options["strict-host-key-checking"] = "no"
        manager.settings.poll_interval = 0.5
        manager.save()

        loaded = SettingsManager(path).settings
        assert loaded.session_options == {"strict-host-key-checking": "no"}
        assert loaded.poll_interval == 0.5

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("use_system_agent: false\nfancy_feature: 1\n")
        assert SettingsManager(path).settings.use_system_agent is False

    def test_malformed_yaml_falls_back(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")
        assert SettingsManager(path).settings == ClientSettings()


class TestContext:
    def test_from_settings(self):
        settings = ClientSettings(session_options={"compression": "yes"}, connect_timeout=3)
        ctx = SshContext.from_settings(settings)
        assert ctx.session_options == {"compression": "yes"}
        assert ctx.connect_timeout == 3

    def test_agent_created_lazily_with_identities(self, tmp_path):
        from sshwire.keygen import generate_keypair

        key = tmp_path / "id_ed25519"
        generate_keypair("ed25519", private_key_path=key)
        settings = ClientSettings(
            use_system_agent=False,
            known_hosts_path=str(tmp_path / "kh"),
            identities=[str(key), str(tmp_path / "missing")],
        )
        ctx = SshContext.from_settings(settings)
        assert ctx.agent is None

        agent = ctx.get_agent()
        assert agent.identity_names() == [str(key)]
        assert agent.known_hosts_path == str(tmp_path / "kh")
        assert ctx.get_agent() is agent

    def test_default_context_is_reused(self, context):
        assert default_context() is context
        other = SshContext()
        set_default_context(other)
        assert default_context() is other

    def test_using_agent_leaves_default_alone(self, context):
        agent = SshAgent(use_system_agent=False)
        with using_agent(agent) as ctx:
            assert ctx.agent is agent
            assert session(None, "h", context=ctx).agent is agent
        assert default_context().agent is not agent

    def test_using_session_options_merges(self, context):
        context.session_options = {"compression": "yes"}
        with using_session_options(strict_host_key_checking="no") as ctx:
            s = session(None, "h", context=ctx)
            assert s.get_config("Compression") == "yes"
            assert s.get_config("StrictHostKeyChecking") == "no"
        assert context.session_options == {"compression": "yes"}


class TestTransportLogLevels:
    def test_filter_relevels(self):
        record = logging.LogRecord("paramiko.transport", logging.INFO, __file__, 1, "msg", None, None)
        TransportLogFilter({logging.INFO: logging.DEBUG}).filter(record)
        assert record.levelno == logging.DEBUG
        assert record.levelname == "DEBUG"

    def test_defaults_demote_debug_to_trace(self):
        assert get_transport_log_levels()[logging.DEBUG] == TRACE
        assert logging.getLevelName(TRACE) == "TRACE"

    def test_installed_on_paramiko_loggers(self):
        install_transport_log_filter()
        filters = logging.getLogger("paramiko.transport").filters
        assert any(isinstance(f, TransportLogFilter) for f in filters)

    def test_temporary_override(self):
        before = get_transport_log_levels()
        with transport_log_levels({logging.INFO: logging.WARNING}):
            assert get_transport_log_levels() == {logging.INFO: logging.WARNING}
        assert get_transport_log_levels() == before

    def test_records_are_relevelled(self, caplog):
        caplog.set_level(TRACE, logger="paramiko.transport")
        logging.getLogger("paramiko.transport").info("kex done")
        record = [r for r in caplog.records if r.getMessage() == "kex done"][0]
        assert record.levelno == logging.DEBUG
