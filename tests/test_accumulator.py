"""
Tests for the streamed reply accumulator.
"""

import pytest

from src.assistant.accumulator import TranscriptAccumulator


class TestTranscriptAccumulator:
    def test_deltas_concatenate_in_order(self):
        buffer = TranscriptAccumulator()
        buffer.reset()

        assert buffer.append("Fever ") == "Fever "
        assert buffer.append("is ") == "Fever is "
        assert buffer.append("common.") == "Fever is common."
        assert buffer.metrics.delta_count == 3

    def test_finish_hands_off_once(self):
        buffer = TranscriptAccumulator()
        buffer.reset()
        buffer.append("done")

        assert buffer.finish() == "done"
        assert buffer.is_complete
        assert buffer.text == ""
        with pytest.raises(RuntimeError):
            buffer.finish()

    def test_append_requires_active_turn(self):
        buffer = TranscriptAccumulator()
        with pytest.raises(RuntimeError):
            buffer.append("orphan")

    def test_empty_delta_ignored(self):
        buffer = TranscriptAccumulator()
        buffer.reset()
        buffer.append("")

        assert buffer.metrics.delta_count == 0
        assert buffer.metrics.first_delta_at is None

    def test_discard_drops_partial_text(self):
        buffer = TranscriptAccumulator()
        buffer.reset()
        buffer.append("half")

        buffer.discard()

        assert buffer.text == ""
        assert not buffer.is_active
        assert not buffer.is_complete

    def test_reset_starts_fresh_turn(self):
        buffer = TranscriptAccumulator()
        buffer.reset()
        buffer.append("old")
        buffer.finish()

        buffer.reset()

        assert buffer.is_active
        assert not buffer.is_complete
        assert buffer.text == ""
