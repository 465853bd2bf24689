"""Service layer for the billing API."""
