"""
FastAPI dependencies resolving the shared components from app state.
"""

from typing import Annotated

from fastapi import Depends, Request

from taskq.config import Settings
from taskq.observability.metrics import MetricsCollector
from taskq.producer import Producer
from taskq.store.base import QueueStore


def get_store(request: Request) -> QueueStore:
    return request.app.state.store


def get_producer(request: Request) -> Producer:
    return request.app.state.producer


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_app_metrics(request: Request) -> MetricsCollector:
    return request.app.state.metrics


StoreDep = Annotated[QueueStore, Depends(get_store)]
ProducerDep = Annotated[Producer, Depends(get_producer)]
SettingsDep = Annotated[Settings, Depends(get_app_settings)]
MetricsDep = Annotated[MetricsCollector, Depends(get_app_metrics)]
