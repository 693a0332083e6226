"""Anki IDE: Codex terminal bridge and its HTTP front."""

__version__ = "0.1.0"
