"""taskwave: scope-guarded iterative task runner."""

__version__ = "0.1.0"
