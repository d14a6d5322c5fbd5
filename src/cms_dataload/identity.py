"""
User identities for signing requests.

An identity is an ed25519 keypair. The public key is registered with cmswww
and the private key signs invoice submissions and status changes. Keys are
saved per user so a later run (or the cmswww CLI) can reuse them.
"""
from __future__ import annotations

import logging
import os
import re

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)
from cryptography.exceptions import InvalidSignature

logger = logging.getLogger(__name__)


class Identity:
    """An ed25519 signing identity."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key

    @classmethod
    def generate(cls) -> Identity:
        return cls(Ed25519PrivateKey.generate())

    @property
    def public_key_bytes(self) -> bytes:
        return self._private_key.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw
        )

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def sign(self, message: str | bytes) -> str:
        """Sign a message and return the hex encoded signature."""
        if isinstance(message, str):
            message = message.encode("utf-8")
        return self._private_key.sign(message).hex()

    def save(self, path: str) -> None:
        """Write the private key as unencrypted PKCS8 PEM, mode 0600."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        pem = self._private_key.private_bytes(
            Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
        )
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as handle:
            handle.write(pem)
        logger.debug(f"Saved identity {self.public_key_hex[:16]}... to {path}")

    @classmethod
    def load(cls, path: str) -> Identity:
        with open(path, "rb") as handle:
            key = load_pem_private_key(handle.read(), password=None)
        if not isinstance(key, Ed25519PrivateKey):
            raise ValueError(f"{path} does not contain an ed25519 private key")
        return cls(key)


def verify_signature(public_key_hex: str, message: str | bytes, signature_hex: str) -> bool:
    """Return True if ``signature_hex`` is a valid signature of ``message``.

    The client only signs; this is the server-side check, used by API mocks
    to accept exactly what SessionClient produces.
    """
    if isinstance(message, str):
        message = message.encode("utf-8")
    try:
        public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
        public_key.verify(bytes.fromhex(signature_hex), message)
    except (InvalidSignature, ValueError):
        return False
    return True


def identity_path(home_dir: str, email: str) -> str:
    """Location of the saved identity for ``email`` under the CLI home dir."""
    safe = re.sub(r"[^A-Za-z0-9._@-]", "_", email)
    return os.path.join(home_dir, "identities", f"{safe}.pem")
