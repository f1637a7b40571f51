"""API routers, one module per resource; main.py mounts each under /api."""
