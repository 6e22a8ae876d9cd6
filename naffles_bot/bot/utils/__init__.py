"""Bot utilities: embed builders and hikari adapters."""
