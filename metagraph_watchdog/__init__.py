"""Self-healing watchdog for a four-layer metagraph cluster."""

__version__ = "0.1.0"
