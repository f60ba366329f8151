"""
Incremental Server-Sent Events decoder.

Reconstructs discrete events from a stream whose chunk boundaries are
arbitrary: a chunk may end mid-line, mid-field or in the middle of a
multi-byte character. Scanning resumes where the previous chunk left off,
so total work is linear in the size of the stream.

Protocol: https://html.spec.whatwg.org/multipage/server-sent-events.html
"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
import codecs
from dataclasses import dataclass
from enum import Enum
import logging
import re

from ._exceptions import ValidationError

logger = logging.getLogger(__name__)

BOM = "\ufeff"

_LINE_END = re.compile(r"[\r\n]")


@dataclass(frozen=True)
class StreamEvent:
    """One complete event, dispatched on a blank line."""

    data: str
    id: str | None = None
    event: str | None = None


class ScanState(str, Enum):
    """Where the scanner is within the current line."""

    AWAITING_LINE = "awaiting-line"
    AWAITING_FIELD_SEPARATOR = "awaiting-field-separator"
    AWAITING_VALUE = "awaiting-value"


class EventStreamDecoder:
    """
    Push-style SSE decoder.

    Feed it chunks with :meth:`feed`; every complete event is handed to
    ``on_event``. Standalone ``retry:`` directives are reported through
    ``on_reconnect_interval`` instead of as events.

    A decoder owns its parser state and must not be shared between streams.
    """

    def __init__(
        self,
        on_event: Callable[[StreamEvent], object],
        on_reconnect_interval: Callable[[int], object] | None = None,
        encoding: str = "utf-8",
    ):
        self._on_event = on_event
        self._on_reconnect_interval = on_reconnect_interval
        self._encoding = encoding
        self.reset()

    def reset(self) -> None:
        """Discard all buffered input and pending event fields."""
        self._text_decoder = codecs.getincrementaldecoder(self._encoding)(errors="replace")
        self._first_chunk = True
        self._closed = False
        self._pending: list[str] = []
        self._pending_length = 0
        self._field_length = -1
        self._discard_newline = False
        self._state = ScanState.AWAITING_LINE
        self._event_id: str | None = None
        self._event_name: str | None = None
        self._data: list[str] = []

    @property
    def state(self) -> ScanState:
        return self._state

    def feed(self, chunk: str | bytes) -> None:
        """Consume one chunk, dispatching every line it completes."""
        if self._closed:
            raise ValidationError("Cannot feed a closed EventStreamDecoder")

        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._text_decoder.decode(bytes(chunk))
        if not chunk:
            return

        if self._first_chunk:
            self._first_chunk = False
            if chunk.startswith(BOM):
                chunk = chunk[len(BOM) :]

        length = len(chunk)
        position = 0

        while position < length:
            if self._state is ScanState.AWAITING_LINE:
                if self._discard_newline:
                    self._discard_newline = False
                    if chunk[position] == "\n":
                        position += 1
                        continue
                self._state = ScanState.AWAITING_FIELD_SEPARATOR

            match = _LINE_END.search(chunk, position)
            line_end = match.start() if match else length

            if self._state is ScanState.AWAITING_FIELD_SEPARATOR:
                colon = chunk.find(":", position, line_end)
                if colon >= 0:
                    self._field_length = self._pending_length + colon - position
                    self._state = ScanState.AWAITING_VALUE

            if match is None:
                # Incomplete line: park the tail; only new input is scanned next time.
                self._pending.append(chunk[position:])
                self._pending_length += length - position
                break

            line = chunk[position:line_end]
            if self._pending:
                line = "".join(self._pending) + line
                self._pending = []
                self._pending_length = 0

            self._discard_newline = match.group() == "\r"
            self._dispatch_line(line, self._field_length)
            position = line_end + 1
            self._field_length = -1
            self._state = ScanState.AWAITING_LINE

    def close(self) -> None:
        """Signal end of stream. Incomplete trailing data is discarded."""
        if self._closed:
            return
        tail = self._text_decoder.decode(b"", final=True)
        if self._pending or self._data or tail:
            logger.debug(
                "Discarding incomplete event at end of stream (%d buffered chars)",
                self._pending_length + len(tail),
            )
        self._pending = []
        self._pending_length = 0
        self._data = []
        self._closed = True

    def _dispatch_line(self, line: str, field_length: int) -> None:
        if not line:
            if self._data:
                event = StreamEvent(
                    data="\n".join(self._data),
                    id=self._event_id,
                    event=self._event_name or None,
                )
                self._data = []
                self._event_id = None
                self._on_event(event)
            self._event_name = None
            return

        if field_length < 0:
            field, value = line, ""
        else:
            field = line[:field_length]
            value = line[field_length + 1 :]
            if value.startswith(" "):
                value = value[1:]

        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event_name = value
        elif field == "id":
            if "\0" not in value:
                self._event_id = value
        elif field == "retry":
            if not (value.isascii() and value.isdigit()):
                logger.debug("Ignoring non-numeric retry directive: %r", value)
                return
            interval = int(value)
            if self._on_reconnect_interval is not None:
                self._on_reconnect_interval(interval)


def decode_events(chunks: Iterable[str | bytes]) -> list[StreamEvent]:
    """Decode a finite sequence of chunks into the list of complete events."""
    events: list[StreamEvent] = []
    decoder = EventStreamDecoder(events.append)
    for chunk in chunks:
        decoder.feed(chunk)
    decoder.close()
    return events


async def aiter_events(chunks: AsyncIterable[str | bytes]) -> AsyncIterator[StreamEvent]:
    """Yield events from an async chunk stream as soon as each one completes."""
    pending: list[StreamEvent] = []
    decoder = EventStreamDecoder(pending.append)
    async for chunk in chunks:
        decoder.feed(chunk)
        while pending:
            yield pending.pop(0)
    decoder.close()
