"""Engine construction from configuration."""

import importlib
from typing import Optional

from paying.config import Config, ConfigurationError, get_config
from paying.logging_config import get_logger
from paying.models import PayingConfig, RepositoryConfig, ServiceDefinition
from paying.repositories.document_store import (
    DocumentStore,
    InMemoryDocumentStore,
    MongoDocumentStore,
)
from paying.repositories.ledger_repository import LedgerRepository
from paying.services.paying import Paying
from paying.services.paying_service import PayingService
from paying.services.time_controller import TimeController

logger = get_logger(__name__)


def load_adapter_class(path: str) -> type[PayingService]:
    """Import a payment service class from a 'module:Class' path.

    Raises:
        ConfigurationError: If the path is malformed or does not name a PayingService
    """
    module_name, _, class_name = path.partition(":")
    if not module_name or not class_name:
        raise ConfigurationError(f"Adapter path must look like 'module:Class', got {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import adapter module {module_name!r}: {e}") from e

    adapter_class = getattr(module, class_name, None)
    if not isinstance(adapter_class, type) or not issubclass(adapter_class, PayingService):
        raise ConfigurationError(f"{path!r} is not a PayingService subclass")
    return adapter_class


def create_service(definition: ServiceDefinition, config: PayingConfig) -> PayingService:
    adapter_class = load_adapter_class(definition.adapter)
    return adapter_class(products=config.products, **definition.options)


def create_store(config: RepositoryConfig) -> DocumentStore:
    """Create the document store selected by the repository settings."""
    if config.backend == "mongodb":
        if not config.url:
            raise ConfigurationError("repository.url is required for the mongodb backend")
        return MongoDocumentStore.from_url(config.url, config.database)
    return InMemoryDocumentStore()


def create_paying(
    config: Optional[Config] = None,
    clock: Optional[TimeController] = None,
    store: Optional[DocumentStore] = None,
) -> Paying:
    """Wire store, repository, services and clock into an engine.

    Args:
        config: Loaded configuration (defaults to the global instance)
        clock: Clock to use (defaults to real time)
        store: Document store override (defaults to the configured backend)
    """
    config = config or get_config()
    paying_config = config.paying
    clock = clock or TimeController()

    repository = LedgerRepository(
        store or create_store(paying_config.repository),
        paying_config.repository,
        clock,
    )
    services = {
        name: create_service(definition, paying_config)
        for name, definition in paying_config.services.items()
    }

    paying = Paying(services, repository, paying_config.engine)
    clock.attach(paying)

    logger.info(
        "paying_created",
        config_path=str(config.config_path),
        backend=paying_config.repository.backend,
        services=sorted(services),
        products=len(paying_config.products),
    )
    return paying
