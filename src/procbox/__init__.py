"""procbox - process supervisor for project sandboxes."""

__version__ = "0.1.0"
