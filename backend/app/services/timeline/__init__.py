"""Movement timeline caching, staleness detection and regeneration."""
