"""anonbox: anonymous message collection with best-effort sender metadata."""

__version__ = "1.0.0"
