"""
Resource admission for jobs.

Memory budgets are estimated per job against a static ceiling.
There is no cross-job reservation accounting.
"""

from .estimator import BYTES_PER_GB, estimate

__all__ = [
    "BYTES_PER_GB",
    "estimate",
]
