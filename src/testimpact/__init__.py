"""Test impact analysis backed by git notes."""

__version__ = "0.1.0"
