"""Moltbook API client."""
