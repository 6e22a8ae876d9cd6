"""Shared infrastructure used by both the bot and the web API."""
