"""Chat with the claude CLI from inside a local dev server."""

__version__ = "0.1.0"
