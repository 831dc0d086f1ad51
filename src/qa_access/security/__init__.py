"""Authentication, role registry, permission resolution and the access guard."""
