"""Atomic on-disk cache and output files."""
