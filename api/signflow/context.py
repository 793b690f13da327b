
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .config import Settings
from .storage import ArtifactStore
from .utils import utcnow


@dataclass
class EngineContext:
    """Collaborators every engine operation needs: store, tunables, clock."""

    store: ArtifactStore
    settings: Settings = field(default_factory=Settings)
    clock: Callable[[], datetime] = utcnow

    def now(self) -> datetime:
        return self.clock()


_default_context: Optional[EngineContext] = None


def get_context() -> EngineContext:
    """FastAPI dependency; tests override it with an in-memory store and a fixed clock."""
    global _default_context
    if _default_context is None:
        from .storage import MinioArtifactStore
        _default_context = EngineContext(MinioArtifactStore())
    return _default_context
