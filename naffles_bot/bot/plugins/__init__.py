"""Slash command plugins and their component handlers."""
