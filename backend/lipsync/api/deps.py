"""Service singletons shared by the API routers."""

from functools import lru_cache

from lipsync.services.event_manager import SessionEventManager, event_manager
from lipsync.services.export_service import ExportService
from lipsync.services.file_exposure import FileExposure, get_file_exposure
from lipsync.services.kling_client import KlingLipSyncClient, get_kling_client
from lipsync.services.media_transformer import MediaTransformer, get_media_transformer
from lipsync.services.queue_scheduler import QueueScheduler
from lipsync.services.session_store import SessionStore, get_session_store


def get_store() -> SessionStore:
    return get_session_store()


def get_events() -> SessionEventManager:
    return event_manager


def get_transformer() -> MediaTransformer:
    return get_media_transformer()


def get_exposure() -> FileExposure:
    return get_file_exposure()


def get_remote() -> KlingLipSyncClient:
    return get_kling_client()


@lru_cache
def get_scheduler() -> QueueScheduler:
    return QueueScheduler(get_store(), get_transformer(), get_remote(), get_events())


@lru_cache
def get_export_service() -> ExportService:
    return ExportService(get_store(), get_transformer(), get_events())
