"""Authentication backends. Each module provides one or more AuthMethod subclasses."""
