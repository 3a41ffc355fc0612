"""Core settings for the report engine."""
