"""OnceOnly API middleware."""
