"""Transport client, stream decoder and model catalog for OpenAI Lab."""

from openai_lab.llm.client import AsyncAPIClient
from openai_lab.llm.models import ModelCache
from openai_lab.llm.stream import DecoderState, StreamDecoder, StreamResult, decode_stream

__all__ = [
    "AsyncAPIClient",
    "DecoderState",
    "ModelCache",
    "StreamDecoder",
    "StreamResult",
    "decode_stream",
]
