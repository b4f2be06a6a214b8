# src/realtime_channels/services/__init__.py
"""Business logic services for the realtime channels pipeline."""

from .memory_store import InMemoryStore
from .message_cache import MessageCache, create_message_cache
from .pubsub import InMemoryPubSub, PubSub, RedisPubSub, create_pubsub
from .queue import CeleryJobQueue, InMemoryJobQueue, Job, JobQueue, create_job_queue

__all__ = [
    "InMemoryStore",
    "MessageCache",
    "create_message_cache",
    "PubSub",
    "InMemoryPubSub",
    "RedisPubSub",
    "create_pubsub",
    "Job",
    "JobQueue",
    "InMemoryJobQueue",
    "CeleryJobQueue",
    "create_job_queue",
]
