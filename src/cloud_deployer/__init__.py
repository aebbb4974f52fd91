"""Provision and update Cloud Run environments, one tracked deployment at a time."""

__version__ = "0.1.0"
