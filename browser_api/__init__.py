"""HTTP front for the headless script runner (FastAPI + uvicorn)."""
