"""Wire schemas for the realtime recognition transport."""
