"""Mnemos HTTP API."""
