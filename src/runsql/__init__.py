"""Per-session PostgreSQL sandboxes for running untrusted SQL."""

__version__ = "1.0.0"
