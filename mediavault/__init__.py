"""Media upload validation and storage service."""

__version__ = "1.0.0"
