"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from functools import lru_cache, partial

from bridge.coordinator import SessionCoordinator
from bridge.functions import FunctionTable, build_function_table
from bridge.registry import SessionRegistry
from config.settings import get_settings
from integrations.asset_store import AssetStore, LocalAssetStore
from integrations.realtime_client import dial_realtime_model
from telephony.hold_music import HoldMusicScheduler


@lru_cache(maxsize=1)
def _function_table() -> FunctionTable:
    return build_function_table()


@lru_cache(maxsize=1)
def _asset_store() -> LocalAssetStore:
    return LocalAssetStore(get_settings().hold_music_dir)


@lru_cache(maxsize=1)
def _registry() -> SessionRegistry:
    settings = get_settings()
    functions = _function_table()
    store = _asset_store()
    dialer = partial(dial_realtime_model, settings=settings)

    def factory(session_id: str, registry: SessionRegistry) -> SessionCoordinator:
        return SessionCoordinator(
            session_id,
            registry=registry,
            dialer=dialer,
            hold_music=HoldMusicScheduler(store, frame_ms=settings.hold_music_frame_ms),
            functions=functions,
            settings=settings,
        )

    return SessionRegistry(
        factory,
        cleanup_timeout=settings.session_cleanup_timeout_seconds,
        check_interval=settings.activity_check_interval_seconds,
    )


def get_function_table() -> FunctionTable:
    return _function_table()


def get_asset_store() -> AssetStore:
    return _asset_store()


def get_registry() -> SessionRegistry:
    return _registry()
