"""Per-tenant credit accounting."""
