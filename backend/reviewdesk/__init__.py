"""Review and revision workflow backend for video editors and their clients."""

__version__ = "0.1.0"
