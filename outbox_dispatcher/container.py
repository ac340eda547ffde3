"""
Корневой контейнер, который подключает все подконтейнеры.
"""

from dependency_injector import containers, providers

from outbox_dispatcher.infrastructure.container import InfrastructureContainer
from outbox_dispatcher.messaging.container import MessagingContainer
from outbox_dispatcher.settings import settings
from outbox_dispatcher.usecase.container import UsecaseContainer


class Container(containers.DeclarativeContainer):

    config = providers.Configuration()
    wiring_config = containers.WiringConfiguration(
        modules=["outbox_dispatcher.api.handlers.outbox.outbox_handler"],
    )

    infrastructure = providers.Container(
        InfrastructureContainer,
        config=config,
    )

    messaging = providers.Container(
        MessagingContainer,
        config=config,
        db=infrastructure.db,
        job_queue=infrastructure.job_queue,
    )

    usecase = providers.Container(
        UsecaseContainer,
        config=config,
        uow=infrastructure.uow,
    )


def create_container() -> Container:
    container = Container()
    container.config.from_pydantic(settings)
    return container
