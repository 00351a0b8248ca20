"""Command modules registered on the top-level worldsync app."""
