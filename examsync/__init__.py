"""Cache and deferred-write synchronization engine for timed exam delivery."""

__version__ = "1.0.0"
