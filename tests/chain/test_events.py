"""Tests for ERC20 Transfer log decoding and amount formatting."""

from __future__ import annotations

import pytest

from erc20_transfer_indexer.chain.events import (
    TRANSFER_EVENT_TOPIC,
    LogDecodeError,
    address_to_topic,
    decode_transfer,
    decode_transfer_log,
    format_token_amount,
    topic_to_address,
)
from erc20_transfer_indexer.chain.models import RawLog

TOKEN = "0x89865aaf2251b10ffc80ce4a809522506bf10ba2"
SENDER = "0x1234567890abcdef1234567890abcdef12345678"
RECIPIENT = "0xabcdef1234567890abcdef1234567890abcdef12"


def _log(topics: tuple[str, ...], data: str) -> RawLog:
    return RawLog(
        address=TOKEN,
        topics=topics,
        data=data,
        block_number=123,
        block_hash="0x" + "b" * 64,
        tx_hash="0x" + "a" * 64,
        log_index=7,
    )


def _transfer_log(value: int, sender: str = SENDER, recipient: str = RECIPIENT) -> RawLog:
    return _log(
        (TRANSFER_EVENT_TOPIC, address_to_topic(sender), address_to_topic(recipient)),
        "0x" + f"{value:064x}",
    )


class TestTopicToAddress:
    def test_extracts_low_20_bytes(self) -> None:
        topic = "0x" + "0" * 24 + SENDER[2:]
        assert topic_to_address(topic) == SENDER

    def test_lowercases_mixed_case(self) -> None:
        topic = "0x" + "0" * 24 + SENDER[2:].upper()
        assert topic_to_address(topic) == SENDER

    def test_rejects_non_zero_padding(self) -> None:
        topic = "0x" + "0" * 23 + "1" + SENDER[2:]
        with pytest.raises(LogDecodeError):
            topic_to_address(topic)

    def test_rejects_short_word(self) -> None:
        with pytest.raises(LogDecodeError):
            topic_to_address("0x" + SENDER[2:])

    def test_address_to_topic_pads_to_32_bytes(self) -> None:
        topic = address_to_topic(SENDER)
        assert len(topic) == 66
        assert topic.endswith(SENDER[2:])


class TestDecodeTransfer:
    def test_decodes_well_formed_log(self) -> None:
        decoded = decode_transfer(_transfer_log(15 * 10**17))

        assert decoded.from_address == SENDER
        assert decoded.to_address == RECIPIENT
        assert decoded.value == 15 * 10**17

    def test_decodes_max_uint256(self) -> None:
        decoded = decode_transfer(_transfer_log(2**256 - 1))
        assert decoded.value == 2**256 - 1

    def test_mint_from_zero_address(self) -> None:
        zero = "0x" + "0" * 40
        decoded = decode_transfer(_transfer_log(1, sender=zero))
        assert decoded.from_address == zero

    def test_fewer_than_three_topics_rejected(self) -> None:
        log = _log((TRANSFER_EVENT_TOPIC, address_to_topic(SENDER)), "0x" + "0" * 64)
        with pytest.raises(LogDecodeError):
            decode_transfer(log)

    def test_wrong_signature_rejected(self) -> None:
        log = _log(
            ("0x" + "f" * 64, address_to_topic(SENDER), address_to_topic(RECIPIENT)),
            "0x" + "0" * 64,
        )
        with pytest.raises(LogDecodeError):
            decode_transfer(log)

    def test_erc721_style_log_rejected(self) -> None:
        # ERC721 Transfer indexes the token id as a fourth topic and has no data.
        log = _log(
            (
                TRANSFER_EVENT_TOPIC,
                address_to_topic(SENDER),
                address_to_topic(RECIPIENT),
                "0x" + f"{5:064x}",
            ),
            "0x",
        )
        with pytest.raises(LogDecodeError):
            decode_transfer(log)

    def test_decode_transfer_log_returns_none_on_failure(self) -> None:
        log = _log((TRANSFER_EVENT_TOPIC,), "0x")
        assert decode_transfer_log(log) is None

    def test_decode_transfer_log_returns_decoded(self) -> None:
        decoded = decode_transfer_log(_transfer_log(42))
        assert decoded is not None
        assert decoded.value == 42


class TestFormatTokenAmount:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (0, "0"),
            (10**18, "1"),
            (15 * 10**17, "1.5"),
            (1, "0.000000000000000001"),
            (123_456 * 10**18, "123456"),
            (10**18 + 10**16, "1.01"),
        ],
    )
    def test_formats(self, value: int, expected: str) -> None:
        assert format_token_amount(value) == expected

    def test_custom_decimals(self) -> None:
        assert format_token_amount(1_500_000, decimals=6) == "1.5"

    def test_negative_rejected(self) -> None:
        with pytest.raises(ValueError):
            format_token_amount(-1)
