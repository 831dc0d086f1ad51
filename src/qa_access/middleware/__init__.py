"""ASGI middleware: rate limiting and usage tracking."""
