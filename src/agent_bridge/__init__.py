"""Agent Bridge - drive interactive CLI agent sessions from a remote client."""

__version__ = "0.1.0"
