"""GeoPresence - real-time room-scoped location sharing relay."""

__version__ = "0.3.0"
