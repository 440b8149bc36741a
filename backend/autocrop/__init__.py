# backend/autocrop/__init__.py
"""Whitespace auto-crop service."""

__version__ = "1.0.0"
