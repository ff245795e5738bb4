"""Transcript-to-social-post content pipeline orchestration engine."""

__version__ = "0.1.0"
