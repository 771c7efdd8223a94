"""Camp Signup Worker Tasks."""

# Import all tasks to register them with Celery
from signup_worker.tasks import registration  # noqa: F401
from signup_worker.tasks import scheduler  # noqa: F401
