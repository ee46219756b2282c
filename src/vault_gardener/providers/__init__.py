"""Agent CLI orchestration utilities."""

from .commands import CONTEXT_FILE, PHASE_PROMPTS, ProviderCommand, build_command, prompt_path
from .process import ProcessTree
from .runner import (
    ExecutionResult,
    FakeProviderRunner,
    ProviderNotFoundError,
    ProviderRunError,
    ProviderRunner,
    TIMEOUT_EXIT_CODE,
)
from .utils import describe_exit, filter_environment

__all__ = [
    "CONTEXT_FILE",
    "ExecutionResult",
    "FakeProviderRunner",
    "PHASE_PROMPTS",
    "ProcessTree",
    "ProviderCommand",
    "ProviderNotFoundError",
    "ProviderRunError",
    "ProviderRunner",
    "TIMEOUT_EXIT_CODE",
    "build_command",
    "describe_exit",
    "filter_environment",
    "prompt_path",
]
