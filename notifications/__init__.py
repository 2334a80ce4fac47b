"""Notification content, delivery transports and producers."""
