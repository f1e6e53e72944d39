"""Data models for the chain module."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


def to_hex(value: Any) -> str:
    """Render bytes, HexBytes or hex strings as lower-case ``0x``-prefixed hex."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


@dataclass(frozen=True)
class RawLog:
    """An undecoded ``eth_getLogs`` entry, normalized to plain Python types."""

    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    block_hash: str
    tx_hash: str
    log_index: int

    @classmethod
    def from_rpc(cls, log: Any) -> RawLog:
        """Create a RawLog from a web3 log (AttributeDict) or a JSON-RPC dict."""
        return cls(
            address=to_hex(log["address"]),
            topics=tuple(to_hex(t) for t in log.get("topics", ())),
            data=to_hex(log.get("data") or b""),
            block_number=_to_int(log["blockNumber"]),
            block_hash=to_hex(log["blockHash"]),
            tx_hash=to_hex(log["transactionHash"]),
            log_index=_to_int(log["logIndex"]),
        )


@dataclass(frozen=True)
class DecodedTransfer:
    """Arguments of a decoded ``Transfer(address,address,uint256)`` event."""

    from_address: str
    to_address: str
    value: int


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)
