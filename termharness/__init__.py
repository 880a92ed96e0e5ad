"""
TermHarness: Black-box test orchestration for terminal applications

A harness combining:
- A process lifecycle controller (pipe or pseudo-terminal backends)
- A mock OpenAI-compatible chat-completion service with SSE streaming
- Retry, recovery and ordered emergency cleanup
- A declarative JSON scenario executor with hooks and plugins
"""

__version__ = "0.1.0"
__all__ = [
    "__version__",
]
