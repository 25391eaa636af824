"""Shared helpers: configuration, option labels and the LLM client."""
