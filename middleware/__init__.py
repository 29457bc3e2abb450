"""middleware/ -- ASGI middleware for Formwork.

Layer rule: middleware/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/, web/, or auth/. api/main.py mounts it.
"""
