# src/flowline/__init__.py
"""Flowline: durable execution engine for marketing automation flows."""

__version__ = "0.1.0"
