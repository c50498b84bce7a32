"""Shared-expense ledger: expenses, shares, settlements and net balances per group."""

__version__ = "0.1.0"
