"""Local transcoding queue daemon."""

__version__ = "0.1.0"
