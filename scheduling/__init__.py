"""Send-time scheduling for deferred notifications."""
