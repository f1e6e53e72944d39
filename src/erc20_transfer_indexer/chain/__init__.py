"""Chain access layer - JSON-RPC reader, Transfer decoding, timestamps."""

from erc20_transfer_indexer.chain.client import (
    ChainClient,
    ProviderError,
    ProviderErrorKind,
    classify_exception,
)
from erc20_transfer_indexer.chain.events import (
    TRANSFER_EVENT_TOPIC,
    LogDecodeError,
    decode_transfer_log,
    format_token_amount,
)
from erc20_transfer_indexer.chain.models import DecodedTransfer, RawLog
from erc20_transfer_indexer.chain.timestamps import TimestampResolver

__all__ = [
    "TRANSFER_EVENT_TOPIC",
    "ChainClient",
    "DecodedTransfer",
    "LogDecodeError",
    "ProviderError",
    "ProviderErrorKind",
    "RawLog",
    "TimestampResolver",
    "classify_exception",
    "decode_transfer_log",
    "format_token_amount",
]
