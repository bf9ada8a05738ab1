"""Shared FastAPI dependencies. Everything lives on ``app.state`` (see main.py)."""

from typing import Optional

from fastapi import Request

from db.database import KeyValueStore
from models.ai_ocr_model import AIOCRClient
from services.analytics_service import AnalyticsHub
from services.progress_service import ClientContext, ProgressPersistence


def get_store(request: Request) -> KeyValueStore:
    return request.app.state.store


def get_ocr_client(request: Request) -> AIOCRClient:
    return request.app.state.ocr_client


def get_analytics(request: Request) -> AnalyticsHub:
    return request.app.state.analytics


def client_namespace(store: KeyValueStore, client_id: str) -> KeyValueStore:
    return store.namespace(f"client:{client_id}")


def progress_for(store: KeyValueStore, client_id: str,
                 client: Optional[ClientContext] = None) -> ProgressPersistence:
    return ProgressPersistence(client_namespace(store, client_id), client=client)
