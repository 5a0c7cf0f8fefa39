"""Document approval routing service."""

__version__ = "0.2.0"
