"""Server-sent event decoding for upstream conversation streams."""

import logging
import re
from typing import AsyncIterable, AsyncIterator, List

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_LINE = "data: [DONE]"

HEARTBEAT_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}.\d{6}$")


def is_heartbeat(payload: str) -> bool:
    """Upstream interleaves bare timestamps with its JSON events; these are not JSON."""
    return bool(HEARTBEAT_PATTERN.match(payload))


class EventStreamDecoder:
    """
    Incrementally turns raw response bytes into event payload strings.

    Bytes are buffered until a newline arrives, so the result does not depend
    on where the transport happened to split the stream. Only ``data:`` lines
    are kept (without their prefix); the ``data: [DONE]`` line ends decoding
    and anything after it is ignored.
    """

    def __init__(self):
        self.buffer = b""
        self.finished = False

    def feed(self, chunk: bytes) -> List[str]:
        """
        Add new bytes to the decoder and return the payloads they complete.
        """
        if self.finished:
            return []
        if isinstance(chunk, str):
            chunk = chunk.encode()

        self.buffer += chunk
        messages = []

        while True:
            eol = self.buffer.find(b"\n")
            if eol < 0:
                break
            raw_line = self.buffer[:eol]
            self.buffer = self.buffer[eol + 1 :]

            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line == DONE_LINE:
                self.finished = True
                self.buffer = b""
                break
            if line.startswith(DATA_PREFIX):
                messages.append(line[len(DATA_PREFIX) :])

        return messages

    def close(self) -> None:
        if self.buffer:
            logger.debug(f"Discarding {len(self.buffer)} bytes of incomplete event data")
        self.buffer = b""


async def iter_messages(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """
    Lazily decode an async byte stream into event payloads, in arrival order.

    Stops as soon as upstream sends the done marker, even if the connection
    stays open.
    """
    decoder = EventStreamDecoder()
    async for chunk in chunks:
        for message in decoder.feed(chunk):
            yield message
        if decoder.finished:
            break
    decoder.close()
