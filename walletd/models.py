"""Domain models for the walletd signing service."""

import hashlib
import json
from typing import Any

from pydantic import BaseModel, Field

from walletd.exceptions import InvalidChainId

CHAIN_ID_SIZE = 32


def _canonical_json(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def parse_chain_id(chain_id: str | bytes) -> bytes:
    """Normalize a chain id to its 32 raw bytes.

    Raises:
        InvalidChainId: If the value is not 32 bytes (64 hex characters).
    """
    if isinstance(chain_id, bytes):
        raw = chain_id
    else:
        try:
            raw = bytes.fromhex(chain_id)
        except ValueError as e:
            raise InvalidChainId(f"Chain id is not valid hex: {chain_id!r}") from e

    if len(raw) != CHAIN_ID_SIZE:
        raise InvalidChainId(f"Chain id must be {CHAIN_ID_SIZE} bytes, got {len(raw)}")
    return raw


class SignedTransaction(BaseModel):
    """A transaction plus the signatures collected for it.

    The wallet service does not interpret actions; it only needs a stable
    byte representation to sign. Immutable: signing returns a new instance.
    """

    model_config = {"frozen": True}

    expiration: str = Field(default="", description="Expiration time (ISO 8601)")
    ref_block_num: int = Field(default=0, ge=0, description="Reference block number")
    ref_block_prefix: int = Field(default=0, ge=0, description="Reference block prefix")
    actions: list[dict[str, Any]] = Field(default_factory=list, description="Opaque actions")
    context_free_data: list[str] = Field(
        default_factory=list, description="Hex encoded context-free data"
    )
    signatures: tuple[str, ...] = Field(default=(), description="Collected signatures")

    def signing_payload(self) -> bytes:
        """Canonical serialization of everything except the signatures."""
        return _canonical_json(
            self.model_dump(mode="json", exclude={"signatures", "context_free_data"})
        )

    def context_free_data_digest(self) -> bytes:
        """SHA-256 over the context-free data, or 32 zero bytes when there is none."""
        if not self.context_free_data:
            return bytes(32)
        return hashlib.sha256(_canonical_json(self.context_free_data)).digest()

    def sig_digest(self, chain_id: str | bytes) -> bytes:
        """Digest that signatures commit to, bound to one chain.

        The same transaction yields different digests on different chains, so
        a signature cannot be replayed across networks.
        """
        return hashlib.sha256(
            parse_chain_id(chain_id) + self.signing_payload() + self.context_free_data_digest()
        ).digest()

    def with_signatures(self, signatures: list[str]) -> "SignedTransaction":
        """Return a copy with ``signatures`` appended."""
        return self.model_copy(update={"signatures": self.signatures + tuple(signatures)})
