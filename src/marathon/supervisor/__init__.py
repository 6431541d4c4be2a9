"""Process supervision: worker registry, probes and interruption polling."""
