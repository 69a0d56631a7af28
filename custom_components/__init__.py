"""Custom integrations package so pytest can import the integration."""
