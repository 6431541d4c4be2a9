"""Marathon: supervised long-running batch jobs with clean shutdown.

Coordinates one job per host: fetches inputs from remote storage, fans the
work out to a bounded pool of worker processes, keeps outputs synced while
watching for operator signals and cloud interruption notices, and tears
everything down in a fixed order whatever the outcome.
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
