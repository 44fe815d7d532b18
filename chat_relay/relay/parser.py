"""Reassembles ``data:`` records from an arbitrarily fragmented byte stream.

Input may arrive in any split, for example::

    1: dat
    2: a: {"Hello": "World"}\\n
    3: \\n
    4: data: {"abc": ["def", "ad\\\\n2a"]}\\n\\n

and must come out as one payload per record::

    {"Hello": "World"}
    {"abc": ["def", "ad\\\\n2a"]}
"""

from __future__ import annotations

import codecs
from collections.abc import AsyncIterable, AsyncIterator, Iterator

DATA_PREFIX = "data:"
LINE_TERMINATOR = "\n"


class ChunkedEventParser:
    """Buffers decoded text and hands out complete records in stream order.

    One instance per upstream response; the buffer is never shared.
    """

    def __init__(self) -> None:
        self._buffer = ""
        # Holds the tail of a multi-byte character split across chunks.
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="ignore")

    @property
    def buffer(self) -> str:
        return self._buffer

    def is_empty(self) -> bool:
        return not self._buffer

    def feed(self, chunk: bytes) -> None:
        self._buffer += self._decoder.decode(chunk)

    def next_record(self) -> str | None:
        """Pop the next complete record, or None if more input is needed."""
        start = self._buffer.find(DATA_PREFIX)
        if start == -1:
            return None
        payload_start = start + len(DATA_PREFIX)
        end = self._buffer.find(LINE_TERMINATOR, payload_start)
        if end == -1:
            return None
        payload = self._buffer[payload_start:end].strip()
        self._buffer = self._buffer[end + len(LINE_TERMINATOR):]
        return payload

    def records(self) -> Iterator[str]:
        """Drain every complete record currently buffered."""
        while True:
            record = self.next_record()
            if record is None:
                return
            yield record

    def close(self) -> None:
        """Discard unterminated trailing data at end of stream."""
        self._buffer = ""
        self._decoder.reset()


async def iter_records(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield records from an async byte source, in payload order.

    Errors raised by *chunks* propagate to the consumer.
    """
    parser = ChunkedEventParser()
    try:
        async for chunk in chunks:
            parser.feed(chunk)
            for record in parser.records():
                yield record
    finally:
        parser.close()
