"""Persistent secp256k1 identities for devp2p nodes."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from pathlib import Path

from eth_keys import keys
from eth_keys.exceptions import ValidationError

from ...errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class P2pKeypair:
    """Node private key and the node id derived from it.

    node_id is the 64-byte uncompressed public key (without the 0x04 prefix),
    hex encoded, as used in enode URLs.
    """

    private_key: str
    node_id: str

    @classmethod
    def from_private_key(cls, private_key_hex: str) -> P2pKeypair:
        """Derive the keypair from a 32-byte hex private key (0x prefix optional)."""
        raw = private_key_hex.strip().removeprefix("0x")
        try:
            key = keys.PrivateKey(bytes.fromhex(raw))
        except (ValueError, ValidationError) as e:
            raise ConfigError(message=f"Invalid P2P private key: {e}")
        return cls(private_key=raw.lower(), node_id=key.public_key.to_bytes().hex())

    @classmethod
    def generate(cls) -> P2pKeypair:
        return cls.from_private_key(secrets.token_hex(32))

    @classmethod
    def load_or_create(cls, path: Path) -> P2pKeypair:
        """Reuse the key stored at path, or generate and store a new one.

        Keeping the key across runs keeps the node's enode stable.
        """
        if path.exists():
            keypair = cls.from_private_key(path.read_text())
            logger.debug("Reusing P2P key %s", path)
            return keypair

        keypair = cls.generate()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(keypair.private_key)
        path.chmod(0o600)
        logger.debug("Generated P2P key %s", path)
        return keypair

    def enode(self, host: str, port: int) -> str:
        return f"enode://{self.node_id}@{host}:{port}"


def key_filename(container_name: str) -> str:
    """File name of a node's persisted P2P key."""
    return f"p2p-{container_name}.key"
