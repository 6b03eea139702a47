"""Composition root: builds the storage graph once per app.

Every component receives its collaborators here instead of reaching for
module-level singletons, so tests can build isolated contexts per case.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from ..storage import (
    ChangeLog,
    EntityMirrorStore,
    LocalStore,
    PartitionStore,
    RemoteStore,
    StorageBackend,
    SyncEngine,
    select_backend,
)
from .config import Settings
from .logging_config import get_logger

logger = get_logger("pwms.context")


@dataclass
class AppContext:
    """Everything the routes need, owned by one app instance."""

    settings: Settings
    store: PartitionStore
    changelog: ChangeLog
    mirror: EntityMirrorStore
    local: LocalStore | None = None
    engine: SyncEngine | None = None

    @property
    def local_first(self) -> bool:
        return self.local is not None


def build_context(
    settings: Settings,
    backend: StorageBackend | None = None,
    remote: RemoteStore | None = None,
) -> AppContext:
    """Wire the storage graph.

    Args:
        settings: Application settings.
        backend: Override the storage backend (skips ``select_backend``).
        remote: Override the remote store used by the sync engine.
    """
    store = PartitionStore(backend or select_backend(settings))
    changelog = ChangeLog(store, capacity=settings.changelog_capacity)
    mirror = EntityMirrorStore(store, changelog)

    local = engine = None
    if settings.local_first:
        local = LocalStore(Path(settings.local_db_path), max_retries=settings.sync_max_retries)
        engine = SyncEngine(local.queue, remote or RemoteStore.from_settings(settings))
        logger.info(f"Local-first mode: local database at {local.db_path}")

    return AppContext(
        settings=settings,
        store=store,
        changelog=changelog,
        mirror=mirror,
        local=local,
        engine=engine,
    )


def get_context(request: Request) -> AppContext:
    """FastAPI dependency for the app's context."""
    return request.app.state.context


def get_local_context(context: Annotated[AppContext, Depends(get_context)]) -> AppContext:
    """FastAPI dependency that requires local-first mode."""
    if not context.local_first:
        raise HTTPException(status_code=404, detail="Local-first sync is not enabled")
    return context


# Type aliases for dependency injection
Context = Annotated[AppContext, Depends(get_context)]
LocalContext = Annotated[AppContext, Depends(get_local_context)]
