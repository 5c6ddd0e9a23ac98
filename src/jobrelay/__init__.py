"""Durable multi-stage job pipeline for tool-calling LLM workloads."""

__version__ = "0.1.0"
