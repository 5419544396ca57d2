"""MedLedger clinical record API: identity resolution and record-custody access control."""

__version__ = "0.1.0"
