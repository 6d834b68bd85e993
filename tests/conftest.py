"""Shared fixtures for draftsync tests."""

from datetime import datetime, timezone

import pytest

from draftsync.models import Draft
from draftsync.queue import LocalDurableQueue
from draftsync.remote import InMemoryDocumentStore
from draftsync.scheduling import ManualScheduler
from draftsync.storage import InMemoryStorage

COLLECTION = "workflow_drafts"


@pytest.fixture
def scheduler():
    """Virtual-time scheduler; nothing fires until advanced."""
    return ManualScheduler()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def remote():
    return InMemoryDocumentStore()


@pytest.fixture
def queue(storage, remote, scheduler):
    return LocalDurableQueue(storage, remote, scheduler)


@pytest.fixture
def make_draft():
    """Factory for drafts with a realistic editor content layout."""

    def _make(
        document_id="draft-1",
        owner_id="user-1",
        version=0,
        last_modified_at=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        **content,
    ):
        body = {
            "current_step": "route_setup",
            "progress": 1,
            "ui": {"last_viewed_step": "route_setup", "celebrations_shown": []},
            "step_data": {
                "route_setup": {
                    "route_name": "Route 7",
                    "last_modified_at": "2024-03-01T12:00:00+00:00",
                }
            },
        }
        body.update(content)
        return Draft(
            document_id=document_id,
            owner_id=owner_id,
            version=version,
            last_modified_at=last_modified_at,
            content=body,
        )

    return _make
