"""Live lecture capture and adaptive question insertion."""

__version__ = "0.1.0"
