"""
Passphrase resolvers for encrypted private keys.

A resolver is any callable ``resolver(name, path) -> str | bytes | None``.
``name`` is the identity name and ``path`` the private key path (or None
for keys given as bytes). Returning None means "don't know".
"""

from __future__ import annotations
import getpass
import logging
import os
import sys
from typing import Callable, Mapping, Optional, Union

logger = logging.getLogger(__name__)

Passphrase = Union[str, bytes]
PassphraseResolver = Callable[[str, Optional[str]], Optional[Passphrase]]


def console_passphrase(name: str, path: Optional[str] = None) -> Optional[str]:
    """Prompt on the terminal. Returns None when stdin is not interactive."""
    if not sys.stdin or not sys.stdin.isatty():
        logger.warning("Passphrase required, but no terminal to ask on.")
        return None
    return getpass.getpass(f"Passphrase for {path or name}: ")


def static_passphrases(mapping: Mapping[str, Passphrase]) -> PassphraseResolver:
    """Resolve from a fixed mapping keyed by identity name or key path."""

    def resolve(name: str, path: Optional[str] = None) -> Optional[Passphrase]:
        if name in mapping:
            return mapping[name]
        if path is not None:
            return mapping.get(path)
        return None

    return resolve


def env_passphrase(variable: str = "SSHWIRE_KEY_PASSPHRASE") -> PassphraseResolver:
    """Resolve from an environment variable (same passphrase for every key)."""

    def resolve(name: str, path: Optional[str] = None) -> Optional[str]:
        return os.environ.get(variable)

    return resolve


def chain(*resolvers: PassphraseResolver) -> PassphraseResolver:
    """First resolver that returns something wins."""

    def resolve(name: str, path: Optional[str] = None) -> Optional[Passphrase]:
        for resolver in resolvers:
            value = resolver(name, path)
            if value is not None:
                return value
        return None

    return resolve


def as_bytes(passphrase: Optional[Passphrase]) -> Optional[bytes]:
    if passphrase is None or isinstance(passphrase, bytes):
        return passphrase
    return passphrase.encode("utf-8")
