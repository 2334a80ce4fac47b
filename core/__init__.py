"""Process-level composition of the notification pipeline."""
