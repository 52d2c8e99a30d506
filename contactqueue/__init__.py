"""contactqueue - queued contact validation with CRM write-back."""

__version__ = "2.0.0"
