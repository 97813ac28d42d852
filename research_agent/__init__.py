"""Cognitive core for an autonomous research agent: memory, reflection and reasoning."""

__version__ = "0.1.0"
