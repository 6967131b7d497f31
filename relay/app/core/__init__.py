"""Service-wide constants."""
SERVICE_NAME = "relay"
