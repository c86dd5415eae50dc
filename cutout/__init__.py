"""Tiered background removal: fast / balanced / precise cutouts as RGBA PNGs."""

__version__ = "0.1.0"
