"""Right-to-erasure deletion saga.

Backs up every document owned by a user, deletes it child-first, and drives
the whole multi-day process as a persisted state machine that survives
restarts, partial failures and user-initiated aborts.
"""

__version__ = "0.1.0"
