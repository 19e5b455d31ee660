"""
Identity store: key material, passphrases and the agent that holds them.

An SshAgent is the credential holder handed to sessions. It keeps named
identities loaded from bytes or files, optionally draws extra keys from the
system ssh-agent, and owns the known_hosts path used when connecting.
"""

from __future__ import annotations
import base64
import hashlib
import logging
import threading
from io import StringIO
from pathlib import Path
from typing import Iterator, Optional, Union

import paramiko

from .config import DEFAULT_KNOWN_HOSTS
from .errors import PassphraseNotFoundError, UnknownIdentityConstructionError
from .passphrase import Passphrase, PassphraseResolver, as_bytes

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

KEY_CLASSES = [
    ('RSA', paramiko.RSAKey),
    ('Ed25519', paramiko.Ed25519Key),
    ('ECDSA', paramiko.ECDSAKey),
]

# Add DSA if available (older Paramiko)
if hasattr(paramiko, 'DSSKey'):
    KEY_CLASSES.append(('DSA', paramiko.DSSKey))


def _as_text(data: Union[str, bytes]) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8")
    return data


def _file_path(path: Optional[PathLike]) -> Optional[str]:
    return None if path is None else str(path)


def load_private_key(key_data: Union[str, bytes], passphrase: Optional[Passphrase] = None) -> paramiko.PKey:
    """
    Load a private key from PEM or OpenSSH text.

    Raises:
        paramiko.PasswordRequiredException: key is encrypted and no passphrase given
        paramiko.SSHException: no key class could parse the data
    """
    text = _as_text(key_data)
    password = _as_text(passphrase) if passphrase is not None else None

    for key_name, key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key(StringIO(text), password=password)
        except paramiko.PasswordRequiredException:
            raise
        except (paramiko.SSHException, ValueError) as e:
            logger.debug(f"Not a {key_name} key: {e}")
            continue

    raise paramiko.SSHException("Unable to parse private key")


class Identity:
    """
    One named key.

    ``encrypted`` records whether the private key needed a passphrase when
    it was loaded, and never changes afterwards (not even once decrypted).
    """

    def __init__(
        self,
        name: str,
        private_key: Optional[bytes] = None,
        public_key: Optional[bytes] = None,
        *,
        private_key_path: Optional[str] = None,
        comment: Optional[str] = None,
    ):
        self.name = name
        self.private_key = private_key
        self.public_key = public_key
        self.private_key_path = private_key_path
        self.comment = comment if comment is not None else name
        self._pkey: Optional[paramiko.PKey] = None

        if private_key is None:
            self._encrypted = False
            return

        try:
            self._pkey = load_private_key(private_key)
            self._encrypted = False
        except paramiko.PasswordRequiredException:
            self._encrypted = True

    def __repr__(self) -> str:
        state = "encrypted" if self.encrypted else "plain"
        if self.encrypted and self.decrypted:
            state += ", decrypted"
        return f"<Identity {self.name} {self.key_type or 'public-only'} ({state})>"

    @property
    def encrypted(self) -> bool:
        return self._encrypted

    @property
    def decrypted(self) -> bool:
        """True when the private key is usable for signing."""
        return self._pkey is not None

    @property
    def pkey(self) -> Optional[paramiko.PKey]:
        return self._pkey

    @property
    def key_type(self) -> Optional[str]:
        if self._pkey is not None:
            return self._pkey.get_name()
        if self.public_key:
            return _as_text(self.public_key).split()[0]
        return None

    def decrypt(self, passphrase: Optional[Passphrase]) -> bool:
        """Try to decrypt the private key. Returns True on success."""
        if self._pkey is not None:
            return True
        if self.private_key is None or passphrase is None:
            return False
        try:
            self._pkey = load_private_key(self.private_key, passphrase)
        except (paramiko.SSHException, ValueError) as e:
            logger.debug(f"Could not decrypt {self.name}: {e}")
            return False
        return True

    def public_key_line(self) -> str:
        """OpenSSH one-line public key."""
        if self.public_key:
            return _as_text(self.public_key).strip()
        if self._pkey is None:
            raise ValueError(f"No public key available for {self.name}")
        line = f"{self._pkey.get_name()} {self._pkey.get_base64()}"
        return f"{line} {self.comment}" if self.comment else line

    def clear(self) -> None:
        """Forget decrypted key material."""
        if self.encrypted:
            self._pkey = None


class SshAgent:
    """
    Credential holder for sessions.

    Usage:
        agent = SshAgent(use_system_agent=False)
        add_identity(agent, private_key_path="~/.ssh/id_ed25519")
        session = Session(agent, "host")
    """

    def __init__(
        self,
        use_system_agent: bool = True,
        known_hosts_path: Optional[PathLike] = DEFAULT_KNOWN_HOSTS,
        passphrase_resolver: Optional[PassphraseResolver] = None,
    ):
        self.use_system_agent = use_system_agent
        self.known_hosts_path = _file_path(known_hosts_path)
        self.passphrase_resolver = passphrase_resolver
        self._identities: dict[str, Identity] = {}
        self._asked: set[str] = set()
        self._system_agent: Optional[paramiko.Agent] = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<SshAgent identities={self.identity_names()} system_agent={self.use_system_agent}>"

    @property
    def identities(self) -> list[Identity]:
        return list(self._identities.values())

    def identity_names(self) -> list[str]:
        return list(self._identities)

    def get_identity(self, name: str) -> Optional[Identity]:
        return self._identities.get(name)

    def add(self, identity: Identity, passphrase: Optional[Passphrase] = None) -> Identity:
        """Add (or replace) an identity, decrypting it when a passphrase is given."""
        if passphrase is not None and identity.encrypted:
            if not identity.decrypt(passphrase):
                logger.warning(f"Passphrase given for {identity.name} did not decrypt it")
        with self._lock:
            self._identities[identity.name] = identity
        logger.debug(f"Added identity {identity!r}")
        return identity

    def remove(self, name: str) -> None:
        with self._lock:
            identity = self._identities.pop(name, None)
            self._asked.discard(name)
        if identity:
            identity.clear()

    def clear(self) -> None:
        for name in self.identity_names():
            self.remove(name)

    def resolve_passphrase(
        self,
        identity: Identity,
        resolver: Optional[PassphraseResolver] = None,
    ) -> bool:
        """
        Ask the resolver (the agent's unless one is given) for the identity's
        passphrase, at most once per identity name for the lifetime of this
        agent. Returns True when the identity ends up decrypted.
        """
        resolver = resolver or self.passphrase_resolver
        with self._lock:
            if identity.name in self._asked or resolver is None:
                return identity.decrypted
            self._asked.add(identity.name)
        passphrase = resolver(identity.name, identity.private_key_path)
        if passphrase is not None:
            identity.decrypt(passphrase)
        return identity.decrypted

    def usable_identities(self) -> Iterator[Identity]:
        """Identities with a private key ready for authentication."""
        for identity in self.identities:
            if identity.private_key is None:
                continue
            if not identity.decrypted:
                self.resolve_passphrase(identity)
            if identity.decrypted:
                yield identity
            else:
                logger.debug(f"Skipping encrypted identity {identity.name}: no passphrase")

    def system_keys(self) -> list:
        """Keys offered by the system ssh-agent, if enabled and reachable."""
        if not self.use_system_agent:
            return []
        if self._system_agent is None:
            try:
                self._system_agent = paramiko.Agent()
            except paramiko.SSHException as e:
                logger.warning(f"Failed to connect to system ssh-agent: {e}")
                return []
        return list(self._system_agent.get_keys())

    def close(self) -> None:
        if self._system_agent is not None:
            self._system_agent.close()
            self._system_agent = None


# =============================================================================
# Functional API
# =============================================================================

def ssh_agent(
    use_system_agent: bool = True,
    known_hosts_path: Optional[PathLike] = DEFAULT_KNOWN_HOSTS,
    passphrase_resolver: Optional[PassphraseResolver] = None,
) -> SshAgent:
    """Create an agent. By default the system ssh-agent is used as well."""
    return SshAgent(
        use_system_agent=use_system_agent,
        known_hosts_path=known_hosts_path,
        passphrase_resolver=passphrase_resolver,
    )


def ssh_agent_p(obj) -> bool:
    return isinstance(obj, SshAgent)


def has_identity(agent: SshAgent, name: Optional[str]) -> bool:
    return name is not None and name in agent.identity_names()


def _read_optional(path: Optional[str]) -> Optional[bytes]:
    if path and Path(path).expanduser().exists():
        return Path(path).expanduser().read_bytes()
    return None


def make_identity(
    agent: Optional[SshAgent],
    private_key_path: PathLike,
    public_key_path: Optional[PathLike] = None,
) -> Identity:
    """Load an identity from files. Can be used to check whether a key is encrypted."""
    private_key_path = _file_path(private_key_path)
    public_key_path = _file_path(public_key_path) or f"{private_key_path}.pub"
    logger.debug(f"Make identity {private_key_path} {public_key_path}")
    private_key = Path(private_key_path).expanduser().read_bytes()
    return Identity(
        private_key_path,
        private_key,
        _read_optional(public_key_path),
        private_key_path=private_key_path,
    )


def keypair(
    agent: Optional[SshAgent] = None,
    *,
    private_key: Optional[Union[str, bytes]] = None,
    public_key: Optional[Union[str, bytes]] = None,
    private_key_path: Optional[PathLike] = None,
    public_key_path: Optional[PathLike] = None,
    passphrase: Optional[Passphrase] = None,
    comment: Optional[str] = None,
) -> Identity:
    """
    Build an Identity from the first usable combination of:

    1. private_key bytes (public_key optional)
    2. public_key bytes only
    3. public_key_path and private_key_path
    4. private_key_path alone

    Raises:
        UnknownIdentityConstructionError: none of the above were given
    """
    private_key_path = _file_path(private_key_path)
    public_key_path = _file_path(public_key_path)

    if private_key is not None:
        identity = Identity(
            comment or "",
            as_bytes(private_key),
            as_bytes(public_key),
            comment=comment,
        )
    elif public_key is not None:
        identity = Identity(comment or "", None, as_bytes(public_key), comment=comment)
    elif private_key_path and public_key_path:
        identity = Identity(
            comment or private_key_path,
            Path(private_key_path).expanduser().read_bytes(),
            _read_optional(public_key_path),
            private_key_path=private_key_path,
            comment=comment,
        )
    elif private_key_path:
        identity = Identity(
            comment or private_key_path,
            Path(private_key_path).expanduser().read_bytes(),
            _read_optional(f"{private_key_path}.pub"),
            private_key_path=private_key_path,
            comment=comment,
        )
    else:
        raise UnknownIdentityConstructionError({
            "private_key": private_key,
            "public_key": public_key,
            "private_key_path": private_key_path,
            "public_key_path": public_key_path,
        })

    if passphrase is not None and identity.encrypted:
        identity.decrypt(passphrase)
    if not identity.name:
        identity.name = _derived_name(identity)
    return identity


def _derived_name(identity: Identity) -> str:
    # Unnamed keys are stored under their fingerprint
    try:
        return fingerprint(identity)
    except ValueError:
        digest = hashlib.sha256(identity.private_key).digest()
        return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def fingerprint(identity: Identity) -> str:
    """OpenSSH style SHA256 fingerprint of an identity's public key."""
    if identity.pkey is not None:
        return identity.pkey.fingerprint
    if identity.public_key:
        fields = _as_text(identity.public_key).split()
        key = paramiko.PKey.from_type_string(fields[0], base64.b64decode(fields[1]))
        return key.fingerprint
    raise ValueError(f"Identity {identity.name} has no key material")


def copy_identities(from_agent: SshAgent, to_agent: SshAgent) -> None:
    for identity in from_agent.identities:
        to_agent.add(identity)


def add_identity(
    agent: SshAgent,
    identity: Optional[Identity] = None,
    *,
    name: Optional[str] = None,
    public_key: Optional[Union[str, bytes]] = None,
    private_key: Optional[Union[str, bytes]] = None,
    public_key_path: Optional[PathLike] = None,
    private_key_path: Optional[PathLike] = None,
    passphrase: Optional[Passphrase] = None,
) -> Identity:
    """
    Add an identity to the agent. The identity is passed directly, or
    constructed from the other keyword arguments (see ``keypair``).
    """
    if identity is None:
        comment = name or _file_path(private_key_path)
        if comment is None and public_key is not None:
            comment = _as_text(public_key).strip()
        identity = keypair(
            agent,
            private_key=private_key,
            public_key=public_key,
            private_key_path=private_key_path,
            public_key_path=public_key_path,
            comment=comment,
        )
    return agent.add(identity, passphrase)


def add_identity_with_keychain(
    agent: SshAgent,
    *,
    name: Optional[str] = None,
    public_key_path: Optional[PathLike] = None,
    private_key_path: Optional[PathLike] = None,
    identity: Optional[Identity] = None,
    passphrase: Optional[Passphrase] = None,
    resolver: Optional[PassphraseResolver] = None,
) -> Optional[Identity]:
    """
    Add a private key, only if not already known, using the passphrase
    resolver (the agent's, unless one is given) if the key is encrypted.

    Raises:
        PassphraseNotFoundError: key is encrypted and nothing produced a
            passphrase that decrypts it
    """
    private_key_path = _file_path(private_key_path)
    name = name or private_key_path or (identity.name if identity else None)
    logger.debug(f"add_identity_with_keychain has_identity? {has_identity(agent, name)}")
    if has_identity(agent, name):
        return None

    if identity is None:
        if private_key_path is None:
            raise UnknownIdentityConstructionError({"name": name, "public_key_path": public_key_path})
        identity = make_identity(agent, private_key_path, public_key_path)
    identity.name = name

    logger.debug(f"add_identity_with_keychain encrypted? {identity.encrypted}")
    if not identity.encrypted:
        return agent.add(identity)

    if passphrase is not None:
        identity.decrypt(passphrase)
    else:
        agent.resolve_passphrase(identity, resolver)
    if not identity.decrypted:
        logger.error("Passphrase required, but none findable.")
        raise PassphraseNotFoundError(name)
    return agent.add(identity)
