"""Integration tests for the vote purchase services.

Runs the store-level guarantees against a live Redis:

- Exactly-once completion and tally credit
- Concurrent credits and seeding
- Reference uniqueness on the ledger

All tests require a reachable Redis and are skipped otherwise.
"""

__version__ = "1.0.0"
