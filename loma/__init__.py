"""Client-side workflow layer for the Loma practice-management API."""

__version__ = "0.4.0"
