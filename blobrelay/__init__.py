"""Content-addressed blob stores, timing traces, blob servers and a wallet client."""

__version__ = "0.1.0"
__all__ = ["trace", "store", "server", "wallet"]