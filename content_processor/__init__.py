"""Content Processor - extract web pages and rewrite them with an LLM."""

__version__ = "0.1.0"
