"""Todo Studio: shared task lists with Google Calendar synchronization."""

__version__ = "0.1.0"
