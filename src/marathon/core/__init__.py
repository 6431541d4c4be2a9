"""Core primitives shared by every Marathon component."""
