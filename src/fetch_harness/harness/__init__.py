"""Harness layer: spawning, pooling and executing agent processes."""
