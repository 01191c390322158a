"""Authentication flow services."""
