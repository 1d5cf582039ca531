"""Caching reverse proxy for GitHub-hosted content."""

__version__ = "0.1.0"
