"""Infinity Gaming Lounge point-of-sale and loyalty backend."""

__version__ = "1.0.0"
