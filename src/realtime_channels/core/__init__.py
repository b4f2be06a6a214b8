"""Core configuration for the realtime channels service."""
