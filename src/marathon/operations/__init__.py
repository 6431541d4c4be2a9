"""Data transfer and encryption collaborators."""
