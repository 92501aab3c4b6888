"""Realtime primitives for the LexLine consultation backend."""
