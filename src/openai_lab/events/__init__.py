"""Event bus for OpenAI Lab."""

from openai_lab.events.bus import EventBus

__all__ = ["EventBus"]
