"""OpenAI Lab: exercise OpenAI-compatible chat APIs from Python."""

__version__ = "0.3.0"
