"""Lambda surface for the asynchronous Textract callback flow."""

from .handlers import completion_listener_handler, start_job_handler

__all__ = ["completion_listener_handler", "start_job_handler"]
