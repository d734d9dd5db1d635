"""HTTP trigger surface (FastAPI). See ``app.create_app``."""
