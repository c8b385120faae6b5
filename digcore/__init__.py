"""Core of an AI-assisted diagnosis subsystem: tool registry, prompts, engine, chat and records."""

__version__ = "0.1.0"