"""Hedge Farm - market-neutral perpetual futures across many wallets."""

__version__ = "0.1.0"
