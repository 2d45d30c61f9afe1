from workgraph.workspace.contexts import ContextError, ContextManager
from workgraph.workspace.vcs import GitBackend, IsolatedCopy, MergeOutcome, VcsError

__all__ = [
    "ContextError",
    "ContextManager",
    "GitBackend",
    "IsolatedCopy",
    "MergeOutcome",
    "VcsError",
]
