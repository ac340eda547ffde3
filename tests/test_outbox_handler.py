from __future__ import annotations

import pytest
from fastapi import HTTPException

from outbox_dispatcher.api.handlers.outbox.outbox_handler import (
    get_event, list_dead_letters, purge_processed, replay_event)
from outbox_dispatcher.api.schemas.requests_schemas.outbox.schemas import (
    DeadLetterListQuery, PurgeRequest)


@pytest.mark.asyncio()
async def test_get_event_maps_not_found_to_404(fake_outbox_usecase) -> None:
    with pytest.raises(HTTPException) as exc_info:
        await get_event(event_id=1, uc=fake_outbox_usecase)

    assert exc_info.value.status_code == 404


@pytest.mark.asyncio()
async def test_replay_dead_letter_returns_reset_event(fake_outbox_usecase, make_event) -> None:
    fake_outbox_usecase.add(make_event(id=3, attempts=5, error_message="gave up"))

    response = await replay_event(event_id=3, uc=fake_outbox_usecase)

    assert response.id == 3
    assert response.attempts == 0


@pytest.mark.asyncio()
async def test_replay_pending_event_is_conflict(fake_outbox_usecase, make_event) -> None:
    fake_outbox_usecase.add(make_event(id=4, attempts=1))

    with pytest.raises(HTTPException) as exc_info:
        await replay_event(event_id=4, uc=fake_outbox_usecase)

    assert exc_info.value.status_code == 409
    assert "not dead-lettered" in exc_info.value.detail


@pytest.mark.asyncio()
async def test_list_dead_letters_respects_limit(fake_outbox_usecase, make_event) -> None:
    for event_id in range(1, 4):
        fake_outbox_usecase.add(make_event(id=event_id, attempts=5))
    fake_outbox_usecase.add(make_event(id=10, attempts=0))

    response = await list_dead_letters(
        uc=fake_outbox_usecase,
        query=DeadLetterListQuery(limit=2),
    )

    assert response.total == 2
    assert [item.id for item in response.items] == [1, 2]


@pytest.mark.asyncio()
async def test_purge_passes_retention_override(fake_outbox_usecase) -> None:
    fake_outbox_usecase.purge_result = 7

    response = await purge_processed(body=PurgeRequest(retention_days=3), uc=fake_outbox_usecase)

    assert response.deleted == 7
    assert response.retention_days == 3
    assert fake_outbox_usecase.purge_calls == [3]


@pytest.mark.asyncio()
async def test_purge_without_override_reports_effective_retention(fake_outbox_usecase) -> None:
    response = await purge_processed(body=PurgeRequest(), uc=fake_outbox_usecase)

    assert response.retention_days == 30
    assert fake_outbox_usecase.purge_calls == [None]

