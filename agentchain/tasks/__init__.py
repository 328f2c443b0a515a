"""Durable, retryable task layer."""

from .base import BaseTask, TaskOutcome, TaskResult
from .batch import Batch
from .queue import TaskQueue

__all__ = ["Batch", "BaseTask", "TaskOutcome", "TaskQueue", "TaskResult"]
