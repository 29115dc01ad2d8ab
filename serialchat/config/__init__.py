"""Configuration helpers for the serial chat relay."""
