"""Resource bounding primitives: sliding-window limiter and the layered circuit breaker."""
