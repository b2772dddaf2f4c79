"""Relay HTTP exchanges between two hosts through a shared folder."""

__version__ = "0.1.0"
