"""
HTTP surface for the survey-insights analysis pipeline.

    - app.py: FastAPI application and lifespan wiring
    - routers/analysis.py: job submission, status, cancellation, stats

Run:
    uvicorn backend.app:app --port 8000
"""
