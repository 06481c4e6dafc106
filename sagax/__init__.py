"""Building blocks for backend services: context propagation, response envelopes, logging, HTTP round trippers, caching, locking, e-mail, graceful shutdown and task models."""

__version__ = "0.1.0"

__all__ = [
    "account_lock",
    "audit",
    "cache",
    "clue",
    "ctxdata",
    "ctxval",
    "dtask",
    "graceful",
    "logger",
    "mail",
    "roundtrip",
]