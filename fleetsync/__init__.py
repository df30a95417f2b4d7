"""Google Sheets reconciliation core for the fleet management backend."""

__version__ = "1.0.0"
