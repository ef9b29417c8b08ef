"""Mobile-money payment session lifecycle and webhook reconciliation."""

__version__ = "0.1.0"
