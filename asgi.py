"""
asgi.py -- Application assembly for Formwork.

This is the ONLY file that mounts both api/ and web/ into one ASGI app.
api/main.py builds the FastAPI instance, middleware and JSON routes; the web
router is added here so api/main.py never depends on web/.

Run with:  uvicorn asgi:app --reload
           python main.py
"""

from api.main import app
from web.routes import router as web_router

app.include_router(web_router, tags=["Web UI"])
