"""Crypto idle game: simulation core and Flask backend."""
