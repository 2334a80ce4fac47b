"""Topic-based event bus feeding the notification queue."""
