"""Naffles Discord bot: community linking, social tasks and allowlists."""

__version__ = "1.0.0"
