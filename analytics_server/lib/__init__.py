"""Shared infrastructure: configuration-backed clients, logging and metrics."""
