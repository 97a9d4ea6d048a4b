"""HTTP rate limiter shared by the app factory and route decorators."""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Keyed by client IP address
limiter = Limiter(key_func=get_remote_address, default_limits=["60/minute"])
