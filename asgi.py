"""
asgi.py -- Application assembly for the IAM console.

This is the ONLY file that imports both api.main and web.routes. It joins the
JSON layer and the HTML layer into a single ASGI app. api/main.py knows
nothing about web/; web/routes.py only borrows the shared rate limiter from
api.limiter.

Run with:  uvicorn asgi:app --port 8080
"""

from api.main import app
from web.routes import router as web_router

# Mount the web UI router here, not in api/main.py.
app.include_router(web_router, tags=["Web UI"])
