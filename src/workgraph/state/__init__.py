from workgraph.state.git_notes import GitNotesStore, WorkgraphStateError

__all__ = ["GitNotesStore", "WorkgraphStateError"]
