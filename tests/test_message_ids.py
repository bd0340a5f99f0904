"""Tests for services.lifecycle.message_ids."""

import logging
import time
from datetime import timezone

import pytest

from services.lifecycle.message_ids import (
    MessageIdGenerator,
    extract_timestamp,
    session_fingerprint,
    validate_message_id,
)


class TestGenerate:

    def test_ten_thousand_ids_are_unique(self):
        generator = MessageIdGenerator()
        ids = [generator.generate() for _ in range(10_000)]
        assert len(set(ids)) == 10_000

    def test_two_generators_on_one_host_do_not_collide(self):
        first, second = MessageIdGenerator(), MessageIdGenerator()
        ids = {first.generate() for _ in range(1_000)} | {second.generate() for _ in range(1_000)}
        assert len(ids) == 2_000

    def test_generated_ids_validate(self):
        generator = MessageIdGenerator()
        for _ in range(100):
            assert generator.validate(generator.generate())

    def test_sequence_is_zero_padded_and_increments(self):
        generator = MessageIdGenerator(fingerprint="abc123")
        first, second = generator.generate(), generator.generate()
        assert first.endswith("_abc123_000001")
        assert second.endswith("_abc123_000002")

    def test_sequence_wraps_modulo_one_million(self):
        generator = MessageIdGenerator(fingerprint="abc")
        generator._sequence = 999_999
        assert generator.generate().endswith("_000000")

    def test_fingerprint_is_base36(self):
        fingerprint = session_fingerprint()
        assert fingerprint
        assert all(ch in "0123456789abcdefghijklmnopqrstuvwxyz" for ch in fingerprint)

    def test_rejects_non_base36_fingerprint(self):
        with pytest.raises(ValueError):
            MessageIdGenerator(fingerprint="Not_Valid")


class TestValidate:

    @pytest.mark.parametrize(
        "candidate",
        [
            "",
            None,
            42,
            "msg_123_abcdef12_fp",
            "msg_123_ABCDEF12_fp_000001",
            "msg_123_abcdef1_fp_000001",
            "msg_123_abcdef12_fp_1",
            "message_123_abcdef12_fp_000001",
            "msg_123_abcdef12_fp_000001_extra",
        ],
    )
    def test_rejects_malformed(self, candidate):
        assert validate_message_id(candidate) is False

    def test_accepts_well_formed(self):
        assert validate_message_id("msg_1700000000000000_deadbeef_k3x9_000042")

    def test_invalid_id_is_logged(self, caplog):
        caplog.set_level(logging.DEBUG, logger="services.lifecycle.message_ids")
        validate_message_id("nope")
        assert "Invalid message id format" in caplog.text


class TestExtractTimestamp:

    def test_round_trips_creation_time(self):
        before = time.time()
        message_id = MessageIdGenerator().generate()
        after = time.time()
        stamp = extract_timestamp(message_id)
        assert stamp is not None
        assert stamp.tzinfo == timezone.utc
        assert before - 0.001 <= stamp.timestamp() <= after + 0.001

    def test_malformed_returns_none(self):
        assert extract_timestamp("msg_garbage") is None
        assert extract_timestamp(None) is None

    def test_generator_method_delegates(self):
        generator = MessageIdGenerator()
        assert generator.extract_timestamp("bad") is None
