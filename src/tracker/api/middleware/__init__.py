"""HTTP middleware for the tracker API."""
