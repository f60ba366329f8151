"""
Unit tests for the incremental SSE decoder.
"""

import asyncio

import pytest

from chatrelay._exceptions import ValidationError
from chatrelay.sse import (
    EventStreamDecoder,
    ScanState,
    StreamEvent,
    aiter_events,
    decode_events,
)

# BOM, CRLF, lone CR, a comment, a retry directive, multi-byte characters,
# multi-line data, a field without a space and a value containing colons.
MIXED_STREAM = (
    "\ufeffid: 7\r\n"
    "event: greeting\r\n"
    "data: héllo 🌍\r\n"
    "data: second line\r\n"
    "\r\n"
    ": keep-alive comment\n"
    "retry: 1500\n"
    "data:no-space\r"
    "\r"
    'data: {"x": [1, 2], "y": "a:b"}\n'
    "\n"
)

MIXED_EVENTS = [
    StreamEvent(data="héllo 🌍\nsecond line", id="7", event="greeting"),
    StreamEvent(data="no-space"),
    StreamEvent(data='{"x": [1, 2], "y": "a:b"}'),
]


def _decode_with_retries(chunks):
    events, retries = [], []
    decoder = EventStreamDecoder(events.append, retries.append)
    for chunk in chunks:
        decoder.feed(chunk)
    decoder.close()
    return events, retries


@pytest.mark.unit
class TestEventDispatch:
    """Line-level behaviour of the decoder."""

    def test_reference_example(self):
        """Pending id is cleared once an event has been dispatched."""
        events = decode_events(['id: 1\ndata: {"a":1}\n', "\ndata: done\n\n"])
        assert events == [
            StreamEvent(data='{"a":1}', id="1"),
            StreamEvent(data="done"),
        ]

    def test_mixed_stream_single_chunk(self):
        events, retries = _decode_with_retries([MIXED_STREAM])
        assert events == MIXED_EVENTS
        assert retries == [1500]

    def test_multi_line_data_joined_with_newlines(self):
        events = decode_events(["data: one\ndata: two\ndata: three\n\n"])
        assert events == [StreamEvent(data="one\ntwo\nthree")]

    def test_empty_data_line_still_dispatches(self):
        events = decode_events(["data\n\n"])
        assert events == [StreamEvent(data="")]

    def test_blank_line_without_data_emits_nothing(self):
        events = decode_events(["event: ping\n\n", "\n\n"])
        assert events == []

    def test_event_name_applies_to_next_dispatch_only(self):
        events = decode_events(["event: update\ndata: a\n\ndata: b\n\n"])
        assert events == [StreamEvent(data="a", event="update"), StreamEvent(data="b")]

    def test_event_name_cleared_by_blank_line_without_data(self):
        events = decode_events(["event: stale\n\ndata: fresh\n\n"])
        assert events == [StreamEvent(data="fresh")]

    def test_empty_event_name_is_none(self):
        events = decode_events(["event:\ndata: x\n\n"])
        assert events[0].event is None

    def test_id_with_nul_is_ignored(self):
        events = decode_events(["id: good\nid: ba\0d\ndata: x\n\n"])
        assert events == [StreamEvent(data="x", id="good")]

    def test_only_one_leading_space_stripped(self):
        events = decode_events(["data:   padded\n\n"])
        assert events == [StreamEvent(data="  padded")]

    def test_unknown_fields_and_comments_ignored(self):
        events = decode_events([": hello\nfoo: bar\ndata: x\n\n"])
        assert events == [StreamEvent(data="x")]

    def test_retry_directive_reported_separately(self):
        events, retries = _decode_with_retries(["retry: 3000\n\n"])
        assert events == []
        assert retries == [3000]

    def test_non_numeric_retry_ignored(self):
        events, retries = _decode_with_retries(["retry: soon\ndata: x\n\n"])
        assert retries == []
        assert events == [StreamEvent(data="x")]

    @pytest.mark.parametrize("value", ["+5", "  5", "1_000", "-1", "\u0661\u0662", "5.0", ""])
    def test_retry_must_be_ascii_digits(self, value):
        events, retries = _decode_with_retries([f"retry:{value}\ndata: x\n\n"])
        assert retries == []
        assert events == [StreamEvent(data="x")]

    def test_retry_without_callback_is_harmless(self):
        assert decode_events(["retry: 10\ndata: x\n\n"]) == [StreamEvent(data="x")]

    def test_done_sentinel_is_plain_data_to_decoder(self):
        assert decode_events(["data: [DONE]\n\n"]) == [StreamEvent(data="[DONE]")]


@pytest.mark.unit
class TestChunkBoundaries:
    """Splitting input anywhere must not change the decoded events."""

    def test_every_two_way_text_split(self):
        for offset in range(len(MIXED_STREAM) + 1):
            chunks = [MIXED_STREAM[:offset], MIXED_STREAM[offset:]]
            assert _decode_with_retries(chunks) == (MIXED_EVENTS, [1500]), offset

    def test_every_two_way_byte_split(self):
        raw = MIXED_STREAM.encode("utf-8")
        for offset in range(len(raw) + 1):
            chunks = [raw[:offset], raw[offset:]]
            assert _decode_with_retries(chunks) == (MIXED_EVENTS, [1500]), offset

    def test_one_byte_at_a_time(self):
        raw = MIXED_STREAM.encode("utf-8")
        chunks = [raw[i : i + 1] for i in range(len(raw))]
        assert _decode_with_retries(chunks) == (MIXED_EVENTS, [1500])

    def test_one_character_at_a_time(self):
        assert _decode_with_retries(list(MIXED_STREAM)) == (MIXED_EVENTS, [1500])

    def test_data_value_split_across_many_chunks(self):
        value = '{"message": {"content": {"parts": ["a fairly long reply"]}}}'
        whole = decode_events([f"data: {value}\n\n"])
        pieces = ["da", "ta", ": "] + [value[i : i + 3] for i in range(0, len(value), 3)]
        split = decode_events([*pieces, "\n", "\n"])
        assert split == whole == [StreamEvent(data=value)]

    def test_long_line_in_tiny_chunks(self):
        value = "x" * 50_000
        chunks = ["data", ":", " "] + list(value) + ["\n\n"]
        assert decode_events(chunks) == [StreamEvent(data=value)]

    def test_crlf_split_between_chunks_is_one_terminator(self):
        events = decode_events(["data: a\r", "\ndata: b\r", "\n\r", "\n"])
        assert events == [StreamEvent(data="a\nb")]

    def test_multibyte_character_split(self):
        raw = "data: 日本\n\n".encode()
        events = decode_events([raw[:7], raw[7:8], raw[8:]])
        assert events == [StreamEvent(data="日本")]


@pytest.mark.unit
class TestStreamEnd:
    def test_trailing_data_without_blank_line_is_dropped(self):
        assert decode_events(["data: complete\n\n", "data: partial\n"]) == [
            StreamEvent(data="complete")
        ]

    def test_unterminated_line_is_dropped(self):
        assert decode_events(["data: no newline at all"]) == []

    def test_feed_after_close_rejected(self):
        decoder = EventStreamDecoder(lambda event: None)
        decoder.close()
        with pytest.raises(ValidationError):
            decoder.feed("data: x\n\n")

    def test_reset_restores_initial_state(self):
        events = []
        decoder = EventStreamDecoder(events.append)
        decoder.feed("id: 1\ndata: half")
        decoder.reset()
        decoder.feed("\ufeffdata: fresh\n\n")
        assert events == [StreamEvent(data="fresh")]


@pytest.mark.unit
class TestBom:
    def test_bom_stripped_from_first_chunk(self):
        assert decode_events(["\ufeffdata: x\n\n"]) == [StreamEvent(data="x")]

    def test_bom_only_stripped_once(self):
        events = decode_events(["data: x\n\n", "\ufeffdata: y\n\n"])
        # A BOM mid-stream is part of a field name, so the line is ignored.
        assert events == [StreamEvent(data="x")]

    def test_bom_bytes_split_across_chunks(self):
        raw = "\ufeffdata: x\n\n".encode()
        assert decode_events([raw[:1], raw[1:2], raw[2:]]) == [StreamEvent(data="x")]


@pytest.mark.unit
class TestScanState:
    def test_states_follow_the_current_line(self):
        decoder = EventStreamDecoder(lambda event: None)
        assert decoder.state is ScanState.AWAITING_LINE
        decoder.feed("da")
        assert decoder.state is ScanState.AWAITING_FIELD_SEPARATOR
        decoder.feed("ta: par")
        assert decoder.state is ScanState.AWAITING_VALUE
        decoder.feed("tial\n")
        assert decoder.state is ScanState.AWAITING_LINE


@pytest.mark.unit
class TestAsyncIteration:
    def test_aiter_events_yields_as_events_complete(self):
        async def chunks():
            for chunk in [b"data: one\n", b"\ndata: tw", b"o\n\ndata: dangling\n"]:
                yield chunk

        async def collect():
            return [event async for event in aiter_events(chunks())]

        assert asyncio.run(collect()) == [StreamEvent(data="one"), StreamEvent(data="two")]
