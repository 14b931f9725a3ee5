"""Incremental decoder for ``text/event-stream`` chat completion bodies.

The decoder is fed raw text chunks exactly as they arrive.  A chunk may
hold zero, one or many frames, and a frame may be split across chunks,
so partial lines are buffered until their newline shows up.

    AWAITING_FRAME -> ACCUMULATING -> DONE
                 \\________________/-> FAILED
"""

from __future__ import annotations

import enum
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, Callable

from openai_lab.core.governor import CancellationToken
from openai_lab.errors import APIError, ExchangeCancelled, normalize_error
from openai_lab.types import TokenUsage

_logger = logging.getLogger(__name__)

_DATA_PREFIX = "data:"
_DONE_SENTINEL = "[DONE]"

DeltaSink = Callable[[str], Any]


class DecoderState(enum.Enum):
    AWAITING_FRAME = "awaiting_frame"
    ACCUMULATING = "accumulating"
    DONE = "done"
    FAILED = "failed"


@dataclass
class StreamResult:
    """Final output of a decoded stream."""

    text: str
    usage: TokenUsage | None
    model: str = ""
    finish_reason: str = ""
    frames: int = 0
    malformed_frames: int = 0


class StreamDecoder:
    """Reassemble deltas and usage from SSE ``data:`` frames."""

    def __init__(self, on_delta: DeltaSink | None = None) -> None:
        self._on_delta = on_delta
        self._buffer = ""
        self._parts: list[str] = []
        self._usage: TokenUsage | None = None
        self._model = ""
        self._finish_reason = ""
        self._frames = 0
        self._malformed = 0
        self._error: APIError | None = None
        self.state = DecoderState.AWAITING_FRAME

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def text(self) -> str:
        """Text accumulated so far (also available after failure)."""
        return "".join(self._parts)

    @property
    def usage(self) -> TokenUsage | None:
        return self._usage

    @property
    def malformed_frames(self) -> int:
        return self._malformed

    @property
    def error(self) -> APIError | None:
        return self._error

    @property
    def finished(self) -> bool:
        return self.state in (DecoderState.DONE, DecoderState.FAILED)

    # ------------------------------------------------------------------
    # Feeding
    # ------------------------------------------------------------------

    def feed(self, chunk: str) -> list[str]:
        """Consume one raw chunk and return the deltas it completed."""
        if self.finished or not chunk:
            return []
        self._buffer += chunk
        deltas: list[str] = []
        while not self.finished:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            delta = self._process_line(line)
            if delta:
                deltas.append(delta)
        return deltas

    def finish(self) -> StreamResult:
        """Flush any unterminated trailing line and finalize.

        A stream that ends without ``[DONE]`` is still finalized with
        whatever was accumulated.
        """
        if self.state == DecoderState.FAILED:
            assert self._error is not None
            raise self._error
        self.flush()
        self.state = DecoderState.DONE
        return self.result()

    def flush(self) -> list[str]:
        """Process a trailing line that never got its newline."""
        if self.finished or not self._buffer:
            return []
        line, self._buffer = self._buffer, ""
        delta = self._process_line(line)
        return [delta] if delta else []

    def fail(self, exc: BaseException) -> APIError:
        """Transition to FAILED and return the normalized error."""
        self._error = normalize_error(exc)
        self.state = DecoderState.FAILED
        return self._error

    def result(self) -> StreamResult:
        return StreamResult(
            text=self.text,
            usage=self._usage,
            model=self._model,
            finish_reason=self._finish_reason or "stop",
            frames=self._frames,
            malformed_frames=self._malformed,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _process_line(self, line: str) -> str:
        line = line.rstrip("\r")
        if not line.startswith(_DATA_PREFIX):
            return ""
        payload = line[len(_DATA_PREFIX):].strip()
        if not payload:
            return ""
        if payload == _DONE_SENTINEL:
            self.state = DecoderState.DONE
            return ""

        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            self._malformed += 1
            _logger.debug("Skipping malformed stream frame: %.100s", payload)
            return ""
        if not isinstance(data, dict):
            self._malformed += 1
            return ""

        self._frames += 1
        if self.state == DecoderState.AWAITING_FRAME:
            self.state = DecoderState.ACCUMULATING

        if data.get("usage"):
            # Last frame carrying usage wins
            self._usage = TokenUsage.from_api(data["usage"])
        if data.get("model"):
            self._model = data["model"]

        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return ""
        choice = choices[0]
        if choice.get("finish_reason"):
            self._finish_reason = choice["finish_reason"]
        delta = choice.get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        if not content:
            return ""

        self._parts.append(content)
        if self._on_delta is not None:
            self._on_delta(content)
        return content


async def decode_stream(
    chunks: AsyncIterable[str],
    on_delta: DeltaSink | None = None,
    token: CancellationToken | None = None,
) -> StreamResult:
    """Drive a :class:`StreamDecoder` over an async chunk source.

    *on_delta* may be sync or async; deltas are delivered in arrival
    order.  The cancellation token is checked before the first chunk and
    after every chunk.  Transport errors move the decoder to FAILED and are
    raised as :class:`APIError`.
    """
    decoder = StreamDecoder()

    async def _dispatch(deltas: list[str]) -> None:
        if on_delta is None:
            return
        for delta in deltas:
            result = on_delta(delta)
            if inspect.isawaitable(result):
                await result

    if token is not None:
        token.raise_if_cancelled()
    try:
        async for chunk in chunks:
            if token is not None:
                token.raise_if_cancelled()
            await _dispatch(decoder.feed(chunk))
            if decoder.state == DecoderState.DONE:
                break
        await _dispatch(decoder.flush())
    except ExchangeCancelled:
        raise
    except Exception as e:
        raise decoder.fail(e) from e
    return decoder.finish()
