"""Shipping carriers and the carrier registry."""
