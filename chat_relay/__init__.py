"""Streaming chat relay in front of an OpenAI-compatible completions API."""

__version__ = "1.0.0"
