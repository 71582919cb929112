"""
Deployment-side pieces of the lifecycle service: health/readiness routes,
Celery job routes and the Celery worker tasks. The Flask factory itself lives
in `lifecycle_app.create_app()`.
"""
