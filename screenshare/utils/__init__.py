"""Utility helpers for the relay and client."""

from .logging import configure_logging

__all__ = ["configure_logging"]
