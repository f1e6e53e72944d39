"""ERC20 Transfer event decoding.

A ``Transfer(address indexed from, address indexed to, uint256 value)`` log
carries the event signature hash in ``topics[0]``, the two addresses as
left-padded 32-byte words in ``topics[1]`` and ``topics[2]``, and the value
as the only 32-byte word of ``data``.
"""

from __future__ import annotations

import logging

from erc20_transfer_indexer.chain.models import DecodedTransfer, RawLog

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

TOKEN_DECIMALS = 18

_WORD_HEX_LEN = 64
_ADDRESS_HEX_LEN = 40
_PADDING_HEX_LEN = _WORD_HEX_LEN - _ADDRESS_HEX_LEN


class LogDecodeError(ValueError):
    """Raised when a log cannot be decoded as an ERC20 Transfer."""


def _strip_0x(value: str) -> str:
    return value[2:] if value[:2].lower() == "0x" else value


def _word(value: str, *, what: str) -> str:
    hexed = _strip_0x(value).lower()
    if len(hexed) != _WORD_HEX_LEN:
        raise LogDecodeError(f"{what} is not a 32-byte word: {value!r}")
    try:
        int(hexed, 16)
    except ValueError as e:
        raise LogDecodeError(f"{what} is not valid hex: {value!r}") from e
    return hexed


def topic_to_address(topic: str) -> str:
    """Extract the address from an indexed address topic.

    The high 12 bytes of the word are padding and must be zero.

    Raises:
        LogDecodeError: If the topic is malformed or the padding is non-zero.
    """
    hexed = _word(topic, what="address topic")
    padding, address = hexed[:_PADDING_HEX_LEN], hexed[_PADDING_HEX_LEN:]
    if padding.strip("0"):
        raise LogDecodeError(f"address topic has non-zero padding: {topic!r}")
    return "0x" + address


def address_to_topic(address: str) -> str:
    """Left-pad an address into a 32-byte topic word."""
    return "0x" + _strip_0x(address).lower().zfill(_WORD_HEX_LEN)


def decode_transfer(log: RawLog) -> DecodedTransfer:
    """Decode a Transfer log strictly.

    Raises:
        LogDecodeError: If the log is not a well-formed ERC20 Transfer.
    """
    if len(log.topics) < 3:
        raise LogDecodeError(f"expected at least 3 topics, got {len(log.topics)}")
    if log.topics[0].lower() != TRANSFER_EVENT_TOPIC:
        raise LogDecodeError(f"unexpected event signature {log.topics[0]!r}")

    from_address = topic_to_address(log.topics[1])
    to_address = topic_to_address(log.topics[2])
    value = int(_word(log.data, what="log data"), 16)
    return DecodedTransfer(from_address=from_address, to_address=to_address, value=value)


def decode_transfer_log(log: RawLog) -> DecodedTransfer | None:
    """Decode a Transfer log, returning None for logs that do not decode.

    Undecodable logs are dropped with a warning; they never fail the batch.
    """
    try:
        return decode_transfer(log)
    except LogDecodeError as e:
        logger.warning(
            "Dropping undecodable log tx=%s index=%d block=%d: %s",
            log.tx_hash,
            log.log_index,
            log.block_number,
            e,
        )
        return None


def format_token_amount(value: int, decimals: int = TOKEN_DECIMALS) -> str:
    """Render raw token units as a decimal string, truncating trailing zeros.

    Examples:
        >>> format_token_amount(10**18)
        '1'
        >>> format_token_amount(15 * 10**17)
        '1.5'
        >>> format_token_amount(0)
        '0'
    """
    if value < 0:
        raise ValueError("token amount must be non-negative")
    quotient, remainder = divmod(value, 10**decimals)
    if remainder == 0:
        return str(quotient)
    fraction = str(remainder).rjust(decimals, "0").rstrip("0")
    return f"{quotient}.{fraction}"
