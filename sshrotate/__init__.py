"""Rotate a shared SSH key out of a fleet, one new key per host."""

__version__ = "0.1.0"
