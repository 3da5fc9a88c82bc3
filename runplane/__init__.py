"""runplane: durable background run orchestration."""

__version__ = "0.1.0"
