from agentshell.state.sessions import (
    RunConfig,
    SessionFallbacks,
    SessionRecord,
    SessionStore,
    SessionStoreError,
)

__all__ = ["RunConfig", "SessionFallbacks", "SessionRecord", "SessionStore", "SessionStoreError"]
