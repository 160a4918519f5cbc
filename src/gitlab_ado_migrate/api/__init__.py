"""Platform transport, error taxonomy and redaction."""
