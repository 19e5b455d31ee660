"""Tests for sshwire.identity - identities, passphrases and the agent."""

from unittest.mock import MagicMock

import paramiko
import pytest

from sshwire.errors import PassphraseNotFoundError, UnknownIdentityConstructionError
from sshwire.identity import (
    Identity,
    SshAgent,
    add_identity,
    add_identity_with_keychain,
    copy_identities,
    fingerprint,
    has_identity,
    keypair,
    make_identity,
    ssh_agent,
    ssh_agent_p,
)
from sshwire.keygen import generate_keypair
from sshwire.passphrase import chain, env_passphrase, static_passphrases


@pytest.fixture(scope="module")
def plain_keys():
    return generate_keypair("rsa", 2048, comment="plain@test")


@pytest.fixture(scope="module")
def encrypted_keys():
    return generate_keypair("rsa", 2048, passphrase="s3cret", comment="locked@test")


@pytest.fixture
def key_files(tmp_path, plain_keys):
    private, public = plain_keys
    (tmp_path / "id_rsa").write_bytes(private)
    (tmp_path / "id_rsa.pub").write_bytes(public + b"\n")
    return tmp_path / "id_rsa"


@pytest.fixture
def encrypted_file(tmp_path, encrypted_keys):
    private, public = encrypted_keys
    (tmp_path / "id_locked").write_bytes(private)
    (tmp_path / "id_locked.pub").write_bytes(public + b"\n")
    return tmp_path / "id_locked"


class TestIdentity:
    def test_plain_key_is_usable(self, plain_keys):
        identity = Identity("k", plain_keys[0], plain_keys[1])
        assert not identity.encrypted
        assert identity.decrypted
        assert identity.key_type == "ssh-rsa"

    def test_encrypted_flag_never_changes(self, encrypted_keys):
        identity = Identity("k", encrypted_keys[0])
        assert identity.encrypted
        assert not identity.decrypted

        assert not identity.decrypt("wrong")
        assert identity.decrypt("s3cret")

        assert identity.encrypted
        assert identity.decrypted

    def test_clear_forgets_decrypted_key(self, encrypted_keys):
        identity = Identity("k", encrypted_keys[0])
        identity.decrypt("s3cret")
        identity.clear()
        assert not identity.decrypted

    def test_public_key_line(self, plain_keys):
        identity = Identity("k", plain_keys[0], plain_keys[1])
        assert identity.public_key_line() == plain_keys[1].decode()

    def test_public_key_line_from_private(self, plain_keys):
        identity = Identity("k", plain_keys[0], comment="me@host")
        assert identity.public_key_line().startswith("ssh-rsa AAAA")
        assert identity.public_key_line().endswith(" me@host")

    def test_garbage_key(self):
        with pytest.raises(paramiko.SSHException):
            Identity("bad", b"not a key")


class TestKeypair:
    def test_private_bytes_win(self, plain_keys, key_files):
        identity = keypair(private_key=plain_keys[0], private_key_path=key_files, comment="c")
        assert identity.private_key == plain_keys[0]
        assert identity.private_key_path is None
        assert identity.name == "c"

    def test_public_only(self, plain_keys):
        identity = keypair(public_key=plain_keys[1])
        assert identity.private_key is None
        assert not identity.decrypted

    def test_both_paths(self, key_files):
        identity = keypair(private_key_path=key_files, public_key_path=f"{key_files}.pub")
        assert identity.name == str(key_files)
        assert identity.public_key.startswith(b"ssh-rsa ")

    def test_private_path_finds_pub(self, key_files):
        identity = keypair(private_key_path=key_files)
        assert identity.public_key is not None

    def test_nothing_given(self):
        with pytest.raises(UnknownIdentityConstructionError) as exc_info:
            keypair()
        assert set(exc_info.value.args_given) == {
            "private_key", "public_key", "private_key_path", "public_key_path",
        }

    def test_passphrase_decrypts(self, encrypted_keys):
        identity = keypair(private_key=encrypted_keys[0], passphrase=b"s3cret")
        assert identity.encrypted and identity.decrypted

    def test_fingerprint_matches_from_either_half(self, plain_keys):
        from_private = keypair(private_key=plain_keys[0])
        from_public = keypair(public_key=plain_keys[1])
        assert fingerprint(from_private).startswith("SHA256:")
        assert fingerprint(from_private) == fingerprint(from_public)


class TestAgent:
    def test_add_and_remove(self, agent, key_files):
        add_identity(agent, private_key_path=key_files)
        assert has_identity(agent, str(key_files))
        agent.remove(str(key_files))
        assert not has_identity(agent, str(key_files))

    def test_add_named_identity(self, agent, plain_keys):
        add_identity(agent, name="deploy", private_key=plain_keys[0])
        assert agent.identity_names() == ["deploy"]

    def test_add_same_name_replaces(self, agent, plain_keys):
        add_identity(agent, name="k", private_key=plain_keys[0])
        add_identity(agent, name="k", private_key=plain_keys[0])
        assert len(agent.identities) == 1

    def test_unnamed_raw_keys_are_kept_apart(self, agent, plain_keys, encrypted_keys):
        other = generate_keypair("ed25519")
        first = add_identity(agent, private_key=plain_keys[0])
        second = add_identity(agent, private_key=other[0])
        locked = add_identity(agent, private_key=encrypted_keys[0])

        assert len(agent.identities) == 3
        assert first.name == fingerprint(first)
        assert second.name == fingerprint(second)
        assert locked.name.startswith("SHA256:")
        assert len({first.name, second.name, locked.name}) == 3

    def test_passphrase_asked_lazily_once(self, tmp_path, encrypted_file):
        resolver = MagicMock(return_value=None)
        agent = SshAgent(use_system_agent=False, known_hosts_path=None, passphrase_resolver=resolver)
        add_identity(agent, private_key_path=encrypted_file)
        resolver.assert_not_called()

        assert list(agent.usable_identities()) == []
        assert list(agent.usable_identities()) == []
        resolver.assert_called_once_with(str(encrypted_file), str(encrypted_file))

    def test_resolver_unlocks(self, encrypted_file):
        agent = SshAgent(
            use_system_agent=False,
            known_hosts_path=None,
            passphrase_resolver=static_passphrases({str(encrypted_file): "s3cret"}),
        )
        add_identity(agent, private_key_path=encrypted_file)
        assert [i.name for i in agent.usable_identities()] == [str(encrypted_file)]

    def test_public_only_not_usable(self, agent, plain_keys):
        add_identity(agent, public_key=plain_keys[1])
        assert list(agent.usable_identities()) == []

    def test_system_agent_disabled(self, agent):
        assert agent.system_keys() == []

    def test_copy_identities(self, agent, plain_keys):
        add_identity(agent, name="a", private_key=plain_keys[0])
        other = ssh_agent(use_system_agent=False)
        copy_identities(agent, other)
        assert other.identity_names() == ["a"]

    def test_ssh_agent_p(self, agent):
        assert ssh_agent_p(agent)
        assert not ssh_agent_p(object())


class TestKeychain:
    def test_plain_key_added(self, agent, key_files):
        identity = add_identity_with_keychain(agent, private_key_path=key_files)
        assert identity is not None
        assert has_identity(agent, str(key_files))

    def test_already_present_is_noop(self, agent, key_files):
        add_identity_with_keychain(agent, private_key_path=key_files)
        assert add_identity_with_keychain(agent, private_key_path=key_files) is None

    def test_encrypted_without_passphrase(self, agent, encrypted_file):
        with pytest.raises(PassphraseNotFoundError) as exc_info:
            add_identity_with_keychain(agent, private_key_path=encrypted_file)
        assert exc_info.value.key_name == str(encrypted_file)
        assert not has_identity(agent, str(encrypted_file))

    def test_wrong_passphrase_rejected_and_not_asked_again(self, encrypted_file):
        resolver = MagicMock(return_value="wrong")
        agent = SshAgent(use_system_agent=False, known_hosts_path=None, passphrase_resolver=resolver)

        with pytest.raises(PassphraseNotFoundError):
            add_identity_with_keychain(agent, private_key_path=encrypted_file)

        assert not has_identity(agent, str(encrypted_file))
        add_identity(agent, private_key_path=encrypted_file)
        assert list(agent.usable_identities()) == []
        resolver.assert_called_once_with(str(encrypted_file), str(encrypted_file))

    def test_explicit_wrong_passphrase(self, agent, encrypted_file):
        with pytest.raises(PassphraseNotFoundError):
            add_identity_with_keychain(agent, private_key_path=encrypted_file, passphrase="nope")

    def test_encrypted_with_resolver(self, agent, encrypted_file, monkeypatch):
        monkeypatch.setenv("SSHWIRE_KEY_PASSPHRASE", "s3cret")
        resolver = chain(static_passphrases({}), env_passphrase())
        identity = add_identity_with_keychain(agent, name="work", private_key_path=encrypted_file,
                                              resolver=resolver)
        assert identity.name == "work"
        assert identity.decrypted

    def test_make_identity_reports_encryption(self, encrypted_file):
        assert make_identity(None, encrypted_file).encrypted
