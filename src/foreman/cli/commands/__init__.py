"""Foreman CLI commands."""

from .run import run
from .schedules import schedules_app
from .tasks import tasks_app
from .worker import worker

__all__ = ["run", "schedules_app", "tasks_app", "worker"]
