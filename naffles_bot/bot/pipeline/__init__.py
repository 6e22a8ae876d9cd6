"""Per-interaction processing: checks, routing, error handling and degradation."""
