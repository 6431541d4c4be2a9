"""Running operations: retries, subprocesses and the fan-out driver."""
