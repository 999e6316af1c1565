"""Worker utilities for the Stripe metrics service."""

from .celery_app import celery_app, dispatch_scrape, run_worker, scrape_task

__all__ = ["celery_app", "dispatch_scrape", "run_worker", "scrape_task"]
