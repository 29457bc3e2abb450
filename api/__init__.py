"""api/ -- FastAPI application assembly and JSON endpoints for Formwork.

Layer rule: api/ imports from auth/, core/, and middleware/. It does NOT
import from web/. asgi.py is the only module that imports both api/ and web/.
"""
