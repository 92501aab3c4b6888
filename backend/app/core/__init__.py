"""Core utilities for the LexLine backend."""
