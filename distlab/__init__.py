"""Simulated RPC, a versioned key/value service with a lock, and a MapReduce coordinator."""

__version__ = "0.1.0"