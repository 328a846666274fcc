"""Shared async utilities."""
