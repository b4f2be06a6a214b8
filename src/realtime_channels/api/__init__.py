"""HTTP API for the realtime channels service."""
