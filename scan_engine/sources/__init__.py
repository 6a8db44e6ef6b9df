"""Per-ATS source connectors and the registry that resolves them."""
