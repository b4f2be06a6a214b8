"""Background workers: durable persistence and account sweeps."""
