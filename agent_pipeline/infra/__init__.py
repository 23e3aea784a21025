"""Infrastructure layers: cache, runtime, telemetry, persistence."""
