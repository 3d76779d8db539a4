"""Terminal task manager with a background reminder scheduler."""

__version__ = "0.1.0"
