"""Service construction.

``ServiceFactory`` resolves the backend once from ``StoreSettings`` and then
builds table-bound services for it:

- ``Backend.EMULATED``: ``MemoryDynamoDbService`` over the factory's
  ``MemoryStore``, so every service created by one factory shares data
- ``Backend.NETWORKED``: ``AwsDynamoDbService`` over the factory's
  ``aioboto3.Session``, configured with the settings' region, endpoint and
  batch retry policy

Example:
    factory = ServiceFactory()
    users = factory.create(
        "dev-users",
        [("userId", "string")],
        User,
        indexes={"by-email": [("email", "string")]},
    )

"""

from collections.abc import Mapping

import aioboto3

from pydynastore.async_models import AwsDynamoDbService
from pydynastore.base import Clock, DynamoDbService, ItemT, TableName
from pydynastore.keys import KeySchemaDefinition
from pydynastore.memory import MemoryDynamoDbService, MemoryStore
from pydynastore.observability import get_logger, setup_logging
from pydynastore.resolver import Backend, resolve_backend
from pydynastore.settings import StoreSettings

logger = get_logger(__name__)


class ServiceFactory:
    """Build services for the backend selected by the environment.

    The backend is resolved once, at construction, and never changes for the
    factory's lifetime.

    Args:
        settings: Settings to use. Read from the environment when omitted.
        store: Store backing emulated services. A fresh one when omitted.
        session: Session backing networked services. Created lazily when omitted.
        backend: Explicit backend, bypassing resolution from the settings.
        configure_logging: Configure structlog from the settings first.

    """

    def __init__(
        self,
        settings: StoreSettings | None = None,
        *,
        store: MemoryStore | None = None,
        session: aioboto3.Session | None = None,
        backend: Backend | None = None,
        configure_logging: bool = False,
    ) -> None:
        self.settings = settings or StoreSettings()
        if configure_logging:
            setup_logging(level=self.settings.log_level, format=self.settings.log_format)

        self.backend = backend or resolve_backend(
            self.settings.class_resolver_override, self.settings.app_env
        )
        self.store = store or MemoryStore()
        self._session = session

        logger.info(
            "backend_selected",
            backend=self.backend.value,
            override=self.settings.class_resolver_override,
            stage=self.settings.app_env,
        )

    @property
    def session(self) -> aioboto3.Session:
        if self._session is None:
            self._session = aioboto3.Session()
        return self._session

    def create(
        self,
        table_name: TableName,
        key_schema: KeySchemaDefinition,
        item_model: type[ItemT],
        *,
        indexes: Mapping[str, KeySchemaDefinition] | None = None,
        region: str | None = None,
        clock: Clock | None = None,
    ) -> DynamoDbService[ItemT]:
        """Build a service bound to one table, key schema and item model.

        Raises:
            InvalidKeySchemaError: If a key schema is malformed or the item
                model does not declare the table's key attributes.

        """
        if self.backend is Backend.EMULATED:
            return MemoryDynamoDbService(
                table_name,
                key_schema,
                item_model,
                store=self.store,
                indexes=indexes,
                region=region,
                clock=clock,
            )

        return AwsDynamoDbService(
            table_name,
            key_schema,
            item_model,
            indexes=indexes,
            region=region or self.settings.region,
            clock=clock,
            session=self.session,
            endpoint_url=self.settings.endpoint_url,
            max_retries=self.settings.batch_max_retries,
            base_delay=self.settings.batch_base_delay,
        )


__all__ = [
    "ServiceFactory",
]
