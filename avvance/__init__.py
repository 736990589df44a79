"""Avvance installment financing integration."""

__version__ = "0.1.0"
