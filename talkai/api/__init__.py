"""API module - HTTP surface."""
