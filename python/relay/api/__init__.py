"""API routes and dependencies."""
