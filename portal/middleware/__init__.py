"""
ASGI middleware: request ids, request logging, authentication, rate limiting.
"""
