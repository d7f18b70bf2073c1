"""
Task queue for async processing
Simple AsyncIO-based queue with named topics

Чтобы избежать циклических импортов, импортируйте напрямую:
    from crmsync.tasks.queue import JobQueue, build_job_queue
"""
