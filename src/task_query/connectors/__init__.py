"""External record sources."""
