"""Enrollment and verification workflows."""
