"""Clients for remote inference endpoints."""
