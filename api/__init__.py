"""api/ -- FastAPI application, JSON endpoints, and login redirects."""
