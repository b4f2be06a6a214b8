"""Small pure helpers shared across the service."""
