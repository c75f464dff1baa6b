"""Batch AI video and image generation across multiple providers."""

__version__ = "0.1.0"
