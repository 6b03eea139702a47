"""PWMS HTTP API."""
