"""OnceOnly API routes."""
