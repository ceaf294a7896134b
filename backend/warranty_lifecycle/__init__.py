"""Warranty Lifecycle Engine - warranty/inspection workflow and reminder scheduling."""

__version__ = "1.0.0"
