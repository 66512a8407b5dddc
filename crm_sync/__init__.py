"""CRM webhook queue and processing pipeline."""

__version__ = "1.0.0"
