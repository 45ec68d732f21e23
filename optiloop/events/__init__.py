"""Event protocol and durable stream backends for the orchestrator bus."""
