# Vercel Python ASGI entrypoint wrapper
# Vercel will install requirements.txt and run this file as a serverless function.

from search_api import app

# Vercel expects a top-level 'app' variable; this re-exports the FastAPI app
# defined at project root.

__all__ = ["app"]
