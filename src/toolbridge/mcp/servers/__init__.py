"""Bundled worker processes."""
