"""OnceOnly - at-most-once execution for keyed operations.

Claims an idempotency key through a store's atomic conditional write, runs the
operation once per claim, and replays the stored result for duplicates.
"""

__version__ = "0.1.0"
