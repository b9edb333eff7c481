"""Agora — petition and poll participation core."""

__version__ = "0.1.0"
