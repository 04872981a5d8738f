"""Budget tracking event subsystem: event bus, domain handlers, storage providers."""
