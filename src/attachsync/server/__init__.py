"""HTTP surface - FastAPI app, API routes and maintenance scheduler."""
