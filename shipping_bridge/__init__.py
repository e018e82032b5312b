"""Stallion Express shipping bridge."""
