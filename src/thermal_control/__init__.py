"""Thermal, power and battery control loops for Framework laptops."""

__version__ = "0.1.0"
