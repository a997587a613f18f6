"""Automated release pipeline for App Store delivery."""

__version__ = "0.1.0"
