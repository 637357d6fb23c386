"""Record-source ports and cancellation."""
