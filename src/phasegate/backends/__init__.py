from phasegate.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from phasegate.backends.claude import ClaudeCLIBackend
from phasegate.backends.openai_sdk import OpenAIBackend
from phasegate.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCLIBackend",
    "OpenAIBackend",
    "ResilientBackend",
    "RetryPolicy",
]
