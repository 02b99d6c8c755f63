"""HTTP API for checkout, settlement and monitoring."""
