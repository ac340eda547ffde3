from outbox_dispatcher.usecase.outbox.outbox_usecase import OutboxUseCase

__all__ = ["OutboxUseCase"]
