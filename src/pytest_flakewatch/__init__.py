"""Build reliability tracking and flaky test detection for pytest."""

__version__ = "0.1.0"
