"""Biometric check-in kiosk: candidate shortlisting, descriptor matching and attendance ledger."""

__version__ = "1.0.0"
