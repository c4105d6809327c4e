"""jobwarden: a background job supervisor."""

__version__ = "0.1.0"
