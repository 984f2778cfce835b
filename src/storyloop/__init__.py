"""Story-driven autonomous coding loop."""

__version__ = "0.1.0"
