# backend/escrowbook/__init__.py
"""Escrow-settled booking core."""

__version__ = "1.0.0"
