"""Site audit pipeline: queued crawls, recurring schedules and progress reporting."""

__version__ = "1.0.0"
