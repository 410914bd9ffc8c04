"""
Job queue - stage automations off the request path, and message delivery.

- AutomationDispatcher runs stage automations on in-process asyncio workers
- MessageQueueProcessor drains due rows from the message log
"""
from job_queue.dispatcher import AutomationDispatcher, AutomationJob, StageChangeService
from job_queue.processor import MessageQueueProcessor

__all__ = [
    "AutomationDispatcher", "AutomationJob", "StageChangeService",
    "MessageQueueProcessor",
]
