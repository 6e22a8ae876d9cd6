"""Bot services: Platform access, telemetry, monitoring and background jobs."""
