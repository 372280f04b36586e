"""Health acquisition, event publishing and notifications."""
