"""Network handlers."""
