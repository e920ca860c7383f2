"""Capture Claude Code sessions to SessionHub and inject project memory."""

__version__ = "0.1.0"
