"""
survey-insights: asynchronous multi-stage LLM analysis of questionnaire responses.

Modules:
    - settings / logging_config / error_handling: ambient configuration
    - models: jobs, results and questionnaire records
    - prompts: template registry, packaged content, selection, rendering, feedback
    - quality: rule-based template and output validator
    - llm / clients / embeddings / anonymization: external collaborators
    - store: job store and questionnaire source (in-memory, PostgreSQL)
    - pipeline: per-type analysis loop for one job attempt
    - job_queue: validation, rate limiter, job runner, in-process worker pool
    - celery_app / tasks: Celery dispatch backend
    - runtime: process wiring
"""

__version__ = "0.1.0"
