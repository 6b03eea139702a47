"""PWMS command-line interface."""
