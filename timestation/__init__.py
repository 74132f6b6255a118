"""Fingerprint enrollment and verification service for a workforce time station."""

__version__ = "1.0.0"
