"""
Keypair generation.
"""

from __future__ import annotations
import logging
import os
from pathlib import Path
from typing import Optional, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ed25519, rsa

from .passphrase import Passphrase, as_bytes

logger = logging.getLogger(__name__)

KEY_TYPES = ("rsa", "dsa", "ed25519")

DEFAULT_BITS = {
    "rsa": 2048,
    "dsa": 1024,
}


def _generate_private_key(key_type: str, bits: Optional[int]):
    if key_type == "rsa":
        return rsa.generate_private_key(public_exponent=65537, key_size=bits or DEFAULT_BITS["rsa"])
    if key_type == "dsa":
        return dsa.generate_private_key(key_size=bits or DEFAULT_BITS["dsa"])
    if key_type == "ed25519":
        return ed25519.Ed25519PrivateKey.generate()
    raise ValueError(f"Unsupported key type {key_type!r}, expected one of {KEY_TYPES}")


def _write_key(path: Union[str, Path], data: bytes, mode: int) -> None:
    path = Path(path).expanduser()
    path.write_bytes(data)
    os.chmod(path, mode)
    logger.debug(f"Wrote {path}")


def generate_keypair(
    key_type: str = "rsa",
    bits: Optional[int] = None,
    passphrase: Optional[Passphrase] = None,
    *,
    comment: Optional[str] = None,
    private_key_path: Optional[Union[str, Path]] = None,
    public_key_path: Optional[Union[str, Path]] = None,
) -> tuple[bytes, bytes]:
    """
    Generate a new keypair.

    RSA and DSA private keys are written as traditional PEM, encrypted when a
    passphrase is given. Ed25519 keys use the OpenSSH private key format. The
    public key is an OpenSSH one-liner.

    Returns:
        (private_key_bytes, public_key_bytes)
    """
    key_type = key_type.lower()
    private_key = _generate_private_key(key_type, bits)

    password = as_bytes(passphrase)
    encryption = (
        serialization.BestAvailableEncryption(password)
        if password
        else serialization.NoEncryption()
    )
    private_format = (
        serialization.PrivateFormat.OpenSSH
        if key_type == "ed25519"
        else serialization.PrivateFormat.TraditionalOpenSSL
    )

    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=private_format,
        encryption_algorithm=encryption,
    )
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    if comment:
        public_bytes += b" " + comment.encode("utf-8")

    logger.info(f"Generated {key_type} keypair{' (encrypted)' if password else ''}")

    if private_key_path:
        _write_key(private_key_path, private_bytes, 0o600)
    if public_key_path:
        _write_key(public_key_path, public_bytes + b"\n", 0o644)

    return private_bytes, public_bytes
