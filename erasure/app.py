"""
Composition root: wires settings, stores, activities and the saga.

Both the CLI and the scheduler worker build one ErasureApp and use it as
an async context manager, which keeps the session manager HTTP client
open for the lifetime of the process.

    init_db(settings)
    async with build_app(settings, get_session_factory()) as app:
        await app.scheduler.run_forever()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from erasure.activities import (
    DeleteUserDataActivity,
    GetProfileActivity,
    GetServicesPreferencesActivity,
    GetUserDataProcessingActivity,
    IsFailedUserDataProcessingActivity,
    SendUserDataDeleteEmailActivity,
    SetUserDataProcessingStatusActivity,
    SetUserSessionLockActivity,
    UpdateSubscriptionsFeedActivity,
)
from erasure.config import Settings
from erasure.notifications import NotificationSender
from erasure.saga.host import ActivityRunner, RetryPolicy, SagaStore, SqlSagaStore
from erasure.saga.orchestrator import DeletionSaga
from erasure.saga.scheduler import SagaScheduler
from erasure.sessions import SessionLockManager
from erasure.status import FailedRequestIndex, StatusTracker
from erasure.storage.blobs import SqlBlobStore
from erasure.storage.documents import SqlDocumentStore
from erasure.storage.repositories import (
    ProfileRepository,
    ServicePreferenceRepository,
    UserDataProcessingRepository,
)
from erasure.storage.tables import SqlTableClient
from erasure.subscription_feed import SubscriptionFeed

log = structlog.get_logger(__name__)


@dataclass
class ErasureApp:
    settings: Settings
    tracker: StatusTracker
    sessions: SessionLockManager
    runner: ActivityRunner
    store: SagaStore
    saga: DeletionSaga
    scheduler: SagaScheduler

    async def __aenter__(self) -> ErasureApp:
        await self.sessions.__aenter__()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.sessions.__aexit__(exc_type, exc_val, exc_tb)


def build_app(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    sessions: SessionLockManager | None = None,
    sender: NotificationSender | None = None,
) -> ErasureApp:
    documents = SqlDocumentStore(session_factory)
    blobs = SqlBlobStore(session_factory)
    page_size = settings.document_page_size

    failed_index = FailedRequestIndex(
        SqlTableClient(session_factory, settings.failed_user_data_processing_table)
    )
    tracker = StatusTracker(
        UserDataProcessingRepository(documents, page_size=page_size), failed_index
    )
    sessions = sessions or SessionLockManager.from_settings(settings)
    sender = sender or NotificationSender.from_settings(settings)

    runner = ActivityRunner(
        [
            GetProfileActivity(ProfileRepository(documents, page_size=page_size)),
            GetServicesPreferencesActivity(
                ServicePreferenceRepository(documents, page_size=page_size)
            ),
            IsFailedUserDataProcessingActivity(failed_index),
            GetUserDataProcessingActivity(tracker),
            SetUserDataProcessingStatusActivity(tracker),
            SetUserSessionLockActivity(sessions),
            DeleteUserDataActivity(
                documents=documents,
                blobs=blobs,
                authentication_locks=SqlTableClient(
                    session_factory, settings.authentication_lock_table
                ),
                backup_container=settings.user_data_backup_container,
                message_content_container=settings.message_content_container,
                page_size=page_size,
            ),
            SendUserDataDeleteEmailActivity(sender),
            UpdateSubscriptionsFeedActivity(
                SubscriptionFeed(SqlTableClient(session_factory, settings.subscription_feed_table))
            ),
        ],
        RetryPolicy.from_settings(settings),
    )
    store = SqlSagaStore(session_factory)
    saga = DeletionSaga.from_settings(runner, store, settings)
    scheduler = SagaScheduler.from_settings(saga, store, settings)

    log.info("app.built", activities=runner.activity_names, environment=settings.environment)
    return ErasureApp(
        settings=settings,
        tracker=tracker,
        sessions=sessions,
        runner=runner,
        store=store,
        saga=saga,
        scheduler=scheduler,
    )
