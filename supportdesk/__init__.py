"""Support desk agent relay with tolerant LLM JSON recovery."""

__version__ = "0.1.0"
