"""web/ -- Server-rendered Jinja2 + HTMX pages for Formwork.

Layer rule: web/ imports from auth/, core/, and middleware/. From api/ it
imports only api.models, the request schemas both layers validate against.
asgi.py mounts the web router; api/main.py never imports web/.
"""
