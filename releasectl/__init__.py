"""releasectl - atomic static-site releases over SSH with automatic rollback."""

__version__ = "0.1.0"
