"""Vinclub wine-club fulfillment service."""
__version__ = "1.0.0"
