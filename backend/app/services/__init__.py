"""Services module - business logic layer."""
