"""Allow running Marathon as ``python -m marathon``."""

from marathon.cli import app

if __name__ == "__main__":
    app()
