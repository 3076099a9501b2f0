"""Chat sessions and generation orchestration."""

from .manager import ChatSessionManager
from .prompt import Prompt, PromptBuilder, PromptBuilderConfig
from .session import ChatSession, GenerationOutcome, GenerationResult, SessionState

__all__ = [
    "ChatSession",
    "ChatSessionManager",
    "GenerationOutcome",
    "GenerationResult",
    "Prompt",
    "PromptBuilder",
    "PromptBuilderConfig",
    "SessionState",
]
