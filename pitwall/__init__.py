# pitwall/__init__.py
"""Pitwall - Sim-racing telemetry analysis API."""

__version__ = "1.0.0"
__title__ = "Pitwall API"
__description__ = "Turn sim-racing telemetry exports into coaching reports"
