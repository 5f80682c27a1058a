"""
Correlation domain package.

This package contains:

- the correlation store that carries resumption handles across the job gap
- completion notification parsing
- the correlator that resumes or aborts waiting workflow instances
"""

from .events import CompletionEvent, extract_messages, parse_completion_message
from .listener import CompletionCorrelator, EventOutcome, NotificationAck
from .store import CorrelationStore, token_path

__all__ = [
    "CompletionCorrelator",
    "CompletionEvent",
    "CorrelationStore",
    "EventOutcome",
    "NotificationAck",
    "extract_messages",
    "parse_completion_message",
    "token_path",
]
