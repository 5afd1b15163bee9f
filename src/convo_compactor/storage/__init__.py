from convo_compactor.storage.cache import ArtifactCache
from convo_compactor.storage.pruning import prune_history, recover_interrupted
from convo_compactor.storage.sessions import SessionRepository
from convo_compactor.storage.store import CompactionStore

__all__ = [
    "ArtifactCache",
    "CompactionStore",
    "SessionRepository",
    "prune_history",
    "recover_interrupted",
]
