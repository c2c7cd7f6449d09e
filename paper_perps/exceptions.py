"""
Exception hierarchy for the paper trading account.

Hierarchy:

    PaperTradingError (base)
    ├── OperationalError   : transient/retryable (price feed, network)
    │   └── PriceFeedError
    ├── DataError          : bad data, reject input or fall back
    │   ├── ValidationError
    │   └── StorageError
    └── InvariantError     : accounting invariant broken, stop immediately

Rules:
    - Expected ledger rejections (bad margin, insufficient funds, ...) are
      returned as LedgerResult values, never raised.
    - OperationalError: catch, log, back off, reconnect.
    - DataError: catch at the boundary, report, leave state untouched.
    - InvariantError: let it propagate.
"""


class PaperTradingError(Exception):
    """Base exception for all paper trading errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(PaperTradingError):
    """Transient/retryable error: price feed, network, timeouts."""
    pass


class PriceFeedError(OperationalError):
    """Raised when the price stream cannot be reached or stops responding."""
    pass


# ============ DATA (bad input) ============

class DataError(PaperTradingError):
    """Bad data: unparseable input, corrupt persisted state."""
    pass


class ValidationError(DataError):
    """Raised when user-supplied order input fails validation."""
    pass


class StorageError(DataError):
    """Raised when persisted account state cannot be read or decoded.
    
    Treatment: log, discard the stored payload, start from a fresh account.
    """
    pass


# ============ INVARIANT (halt) ============

class InvariantError(PaperTradingError):
    """Accounting invariant violation. Never caught and continued."""
    pass
