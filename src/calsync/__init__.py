"""calsync: calendar event synchronization against OAuth2 calendar providers."""

__version__ = "0.1.0"
