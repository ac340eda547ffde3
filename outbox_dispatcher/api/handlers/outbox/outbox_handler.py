from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, HTTPException, status

from outbox_dispatcher.api.schemas.requests_schemas.outbox.schemas import (
    DeadLetterListQuery, PurgeRequest)
from outbox_dispatcher.api.schemas.response_schemas.schemas import (
    DeadLetterListResponse, OutboxEventResponse, OutboxStatsResponse,
    PurgeResponse, QueueStatsResponse, StatsResponse)
from outbox_dispatcher.container import Container
from outbox_dispatcher.exceptions import (AppError, MessagingError,
                                          OutboxEventNotFoundError,
                                          ReplayNotAllowedError,
                                          RepositoryError)
from outbox_dispatcher.logger import logger
from outbox_dispatcher.usecase.outbox import OutboxUseCase

router = APIRouter(
    prefix="/api/v1/outbox",
    tags=["Outbox"],
)


def _map_app_error_to_http(exc: AppError) -> tuple[int, str]:
    if isinstance(exc, OutboxEventNotFoundError):
        return status.HTTP_404_NOT_FOUND, "Outbox event not found"
    if isinstance(exc, ReplayNotAllowedError):
        return status.HTTP_409_CONFLICT, f"Outbox event cannot be replayed: {exc.reason}"
    if isinstance(exc, MessagingError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR, "Messaging error"
    if isinstance(exc, RepositoryError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR, "Database error"
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"


def _raise_http_from_app_error(operation: str, exc: AppError) -> None:
    status_code, detail = _map_app_error_to_http(exc)

    log_extra = {
        "error_type": type(exc).__name__,
        **getattr(exc, "context", {}),
    }

    message = "Application error in %s: %s"

    if 400 <= status_code < 500:
        logger.warning(message, operation, str(exc), extra=log_extra)
    else:
        logger.error(message, operation, str(exc), extra=log_extra)

    raise HTTPException(status_code=status_code, detail=detail) from exc


@router.get(
    "/stats",
    response_model=StatsResponse,
)
@inject
async def get_stats(
    uc: OutboxUseCase = Depends(Provide[Container.usecase.outbox_usecase]),
) -> StatsResponse:
    """
    Счётчики outbox и реестра заданий по очередям.
    :param uc: usecase с операциями outbox
    :return: StatsResponse
    """
    try:
        outbox_stats, queue_stats = await uc.get_stats()
    except AppError as exc:
        _raise_http_from_app_error("get_stats", exc)

    return StatsResponse(
        outbox=OutboxStatsResponse.from_entity(outbox_stats),
        queues=[QueueStatsResponse.from_entity(item) for item in queue_stats],
    )


@router.get(
    "/dead-letters",
    response_model=DeadLetterListResponse,
)
@inject
async def list_dead_letters(
    uc: OutboxUseCase = Depends(Provide[Container.usecase.outbox_usecase]),
    query: DeadLetterListQuery = Depends(DeadLetterListQuery.as_query),
) -> DeadLetterListResponse:
    """
    События, исчерпавшие попытки и ожидающие ручного вмешательства.
    """
    try:
        events = await uc.list_dead_letters(query.limit)
    except AppError as exc:
        _raise_http_from_app_error("list_dead_letters", exc)

    return DeadLetterListResponse(
        total=len(events),
        items=[OutboxEventResponse.from_entity(event) for event in events],
    )


@router.get(
    "/events/{event_id}",
    response_model=OutboxEventResponse,
)
@inject
async def get_event(
    event_id: int,
    uc: OutboxUseCase = Depends(Provide[Container.usecase.outbox_usecase]),
) -> OutboxEventResponse:
    try:
        event = await uc.get_event(event_id)
    except AppError as exc:
        _raise_http_from_app_error("get_event", exc)

    return OutboxEventResponse.from_entity(event)


@router.post(
    "/events/{event_id}/replay",
    response_model=OutboxEventResponse,
)
@inject
async def replay_event(
    event_id: int,
    uc: OutboxUseCase = Depends(Provide[Container.usecase.outbox_usecase]),
) -> OutboxEventResponse:
    """
    Возвращает событие из dead-letter в обработку.
    :param event_id: id события outbox.
    :param uc: Usecase с операциями outbox.
    :return: OutboxEventResponse с обновлённым состоянием.
    """
    try:
        event = await uc.replay_event(event_id)
    except AppError as exc:
        _raise_http_from_app_error("replay_event", exc)

    return OutboxEventResponse.from_entity(event)


@router.post(
    "/retention/purge",
    response_model=PurgeResponse,
)
@inject
async def purge_processed(
    body: PurgeRequest,
    uc: OutboxUseCase = Depends(Provide[Container.usecase.outbox_usecase]),
) -> PurgeResponse:
    try:
        result = await uc.purge_processed(body.retention_days)
    except AppError as exc:
        _raise_http_from_app_error("purge_processed", exc)

    return PurgeResponse.from_entity(result)
