"""Offline-first core of a Dolibarr ERP client."""

__version__ = "0.1.0"
