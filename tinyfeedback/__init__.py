"""TinyFeedback webhook delivery service."""

__version__ = "1.0.0"
