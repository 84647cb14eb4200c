"""SSE parsing and canonical re-framing of provider streams."""

import codecs
import json
import logging
from typing import AsyncIterator, List, Optional

from .models import EventTag, FallbackInfo, StreamEvent
from .providers import ProviderDriver

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"
DONE_CHUNK = b"data: [DONE]\n\n"


def canonical_chunk(text: str) -> bytes:
    """Encode one text delta in the single output format every provider maps to."""
    payload = json.dumps(
        {"choices": [{"delta": {"content": text}}]},
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return f"data: {payload}\n\n".encode("utf-8")


class SSELineBuffer:
    """
    Incrementally splits a byte stream into SSE ``data:`` payloads.

    Bytes are decoded with an incremental UTF-8 decoder so a multi-byte
    character split across network chunks is held back until complete. Only
    whole lines are interpreted; the remainder stays buffered until the next
    feed() or flush().
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> List[str]:
        self.buffer += self._decoder.decode(chunk)
        payloads = []
        while "\n" in self.buffer and not self.done:
            line, self.buffer = self.buffer.split("\n", 1)
            payload = self._parse_line(line)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def flush(self) -> List[str]:
        """Interpret whatever is left once the upstream has closed."""
        self.buffer += self._decoder.decode(b"", final=True)
        remainder, self.buffer = self.buffer, ""
        payloads = []
        for line in remainder.split("\n"):
            if self.done:
                break
            payload = self._parse_line(line)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def _parse_line(self, line: str) -> Optional[str]:
        line = line.rstrip("\r")
        if not line or line.startswith(":"):
            return None
        if not line.startswith("data:"):
            # event:, id:, retry: fields carry nothing we relay
            return None
        data = line[5:].strip()
        if data == DONE_MARKER:
            self.done = True
            return None
        return data or None


class StreamTransformer:
    """Turns raw provider bytes into plain text deltas using a driver's accessor."""

    def __init__(self, driver: ProviderDriver):
        self.driver = driver
        self.lines = SSELineBuffer()

    @property
    def done(self) -> bool:
        return self.lines.done

    def feed(self, chunk: bytes) -> List[str]:
        return self._extract(self.lines.feed(chunk))

    def flush(self) -> List[str]:
        return self._extract(self.lines.flush())

    def _extract(self, payloads: List[str]) -> List[str]:
        deltas = []
        for data in payloads:
            try:
                payload = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed SSE line: {data[:80]}")
                continue
            if not isinstance(payload, dict):
                continue
            text = self.driver.parse_stream_chunk(payload)
            if text:
                deltas.append(text)
        return deltas


async def reframe(
    byte_iter: AsyncIterator[bytes], driver: ProviderDriver
) -> AsyncIterator[bytes]:
    """
    Re-frame a provider's SSE byte stream as canonical chunks.

    Args:
        byte_iter: Raw bytes from the upstream response
        driver: Driver whose accessor extracts text from each payload

    Yields:
        One canonical chunk per non-empty delta, then the DONE chunk
    """
    transformer = StreamTransformer(driver)
    async for chunk in byte_iter:
        for text in transformer.feed(chunk):
            yield canonical_chunk(text)
        if transformer.done:
            break
    for text in transformer.flush():
        yield canonical_chunk(text)
    yield DONE_CHUNK


def format_fallback(info: FallbackInfo) -> bytes:
    """SSE comment announcing that a fallback model is answering."""
    return f": fallback from={info.from_model} reason={info.reason}\n\n".encode("utf-8")


def format_event(event: StreamEvent) -> bytes:
    """Serialize a StreamEvent as canonical SSE bytes."""
    if event.tag is EventTag.DELTA:
        return canonical_chunk(event.text)
    if event.tag is EventTag.DONE:
        if event.partial and event.error is not None:
            note = f": partial reason={event.error.kind}\n\n".encode("utf-8")
            return note + DONE_CHUNK
        return DONE_CHUNK
    message = event.error.message if event.error else "Unknown error"
    body = json.dumps({"error": message}, ensure_ascii=False)
    return f"data: {body}\n\n".encode("utf-8") + DONE_CHUNK
