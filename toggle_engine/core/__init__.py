"""Core engine packages."""
