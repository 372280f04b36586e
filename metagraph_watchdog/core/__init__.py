"""Node HTTP API client and remote command channel."""
