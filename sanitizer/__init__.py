"""Streaming LLM orchestration for sanitizing long articles."""

__version__ = "1.0.0"
