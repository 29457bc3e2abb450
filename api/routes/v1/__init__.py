"""api/routes/v1/ -- Version 1 JSON routers, mounted under /api/v1 by api/main.py."""
