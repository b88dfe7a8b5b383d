from __future__ import annotations

import asyncio
import os
from typing import Any, List, Mapping, MutableMapping, Optional
from uuid import uuid4

from celery import Celery
from fastapi.encoders import jsonable_encoder

from .config import EngineConfig
from .fingerprinting import fingerprint_from_mapping
from .geolocation import snapshot_from_mapping
from .persistence import MongoStores
from .security_monitors import ChangeMonitor


def _broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")


def _result_backend() -> str:
    return os.getenv("CELERY_RESULT_BACKEND", _broker_url())


celery_app = Celery("adaptive_auth_risk", broker=_broker_url(), backend=_result_backend())
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
)


def _build_stores(config: EngineConfig) -> MongoStores:
    return MongoStores(uri=config.mongodb_uri, database=config.mongodb_database)


async def _run_monitoring(
    user_id: str,
    previous_device_id: Optional[str],
    current_device: Optional[Mapping[str, Any]],
    previous_location: Optional[Mapping[str, Any]],
    current_location: Optional[Mapping[str, Any]],
) -> List[MutableMapping[str, Any]]:
    config = EngineConfig.from_env()
    stores = _build_stores(config)
    try:
        monitor = ChangeMonitor(stores.audit, config)
        reports = await monitor.check_changes(
            user_id,
            previous_device_id=previous_device_id,
            current_device=fingerprint_from_mapping(current_device) if current_device else None,
            previous_location=snapshot_from_mapping(previous_location) if previous_location else None,
            current_location=snapshot_from_mapping(current_location) if current_location else None,
        )
    finally:
        await stores.close()
    return [jsonable_encoder(report.as_dict()) for report in reports]


@celery_app.task(name="adaptive_auth_risk.monitor_changes")
def monitor_changes(
    task_id: str,
    user_id: str,
    previous_device_id: Optional[str] = None,
    current_device: Optional[Mapping[str, Any]] = None,
    previous_location: Optional[Mapping[str, Any]] = None,
    current_location: Optional[Mapping[str, Any]] = None,
) -> MutableMapping[str, Any]:
    # Each task owns its event loop, so the Mongo client is created inside it.
    reports = asyncio.run(
        _run_monitoring(user_id, previous_device_id, current_device, previous_location, current_location)
    )
    return {"task_id": task_id, "user_id": user_id, "reports": reports}


def enqueue_change_monitoring(
    user_id: str,
    previous_device_id: Optional[str] = None,
    current_device: Optional[Mapping[str, Any]] = None,
    previous_location: Optional[Mapping[str, Any]] = None,
    current_location: Optional[Mapping[str, Any]] = None,
) -> str:
    task_id = str(uuid4())
    monitor_changes.apply_async(
        args=[task_id, user_id, previous_device_id, current_device, previous_location, current_location],
        task_id=task_id,
    )
    return task_id
