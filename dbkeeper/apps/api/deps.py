from __future__ import annotations

from fastapi import Request

from dbkeeper.persistence.store import RecordStore


def get_store(request: Request) -> RecordStore:
    # The store is chosen once in create_app so tests can swap in the in-memory one.
    return request.app.state.store
