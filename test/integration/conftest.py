"""Fixtures for running both backends side by side.

``user_service`` and ``message_service`` are parametrized over the two
backends: "memory" builds an emulated service over a fresh store, "network"
creates the table in DynamoDB Local (started once per session in a Docker
container) and builds a network service against it.
"""

from collections.abc import AsyncGenerator, Generator
from typing import Any

import aioboto3
from pytest import FixtureRequest, fixture
from pytest_asyncio import fixture as async_fixture
from sample_models import (
    MESSAGE_INDEXES,
    MESSAGE_KEY,
    USER_INDEXES,
    USER_KEY,
    Message,
    User,
    fixed_clock,
)
from testcontainers.core.container import DockerContainer  # type: ignore[import-untyped]
from testcontainers.core.wait_strategies import (  # type: ignore[import-untyped]
    HttpWaitStrategy,
)

from pydynastore.async_models import AwsDynamoDbService
from pydynastore.base import DynamoDbService
from pydynastore.memory import MemoryDynamoDbService, MemoryStore

REGION = "us-east-1"

USERS_TABLE = "test-users"
MESSAGES_TABLE = "test-messages"

_USERS_TABLE_DEFINITION: dict[str, Any] = {
    "TableName": USERS_TABLE,
    "KeySchema": [{"AttributeName": "userId", "KeyType": "HASH"}],
    "AttributeDefinitions": [
        {"AttributeName": "userId", "AttributeType": "S"},
        {"AttributeName": "email", "AttributeType": "S"},
        {"AttributeName": "status", "AttributeType": "S"},
    ],
    "GlobalSecondaryIndexes": [
        {
            "IndexName": "by-email",
            "KeySchema": [{"AttributeName": "email", "KeyType": "HASH"}],
            "Projection": {"ProjectionType": "ALL"},
        },
        {
            "IndexName": "by-status",
            "KeySchema": [{"AttributeName": "status", "KeyType": "HASH"}],
            "Projection": {"ProjectionType": "ALL"},
        },
    ],
    "BillingMode": "PAY_PER_REQUEST",
}

_MESSAGES_TABLE_DEFINITION: dict[str, Any] = {
    "TableName": MESSAGES_TABLE,
    "KeySchema": [
        {"AttributeName": "chatId", "KeyType": "HASH"},
        {"AttributeName": "timestamp", "KeyType": "RANGE"},
    ],
    "AttributeDefinitions": [
        {"AttributeName": "chatId", "AttributeType": "S"},
        {"AttributeName": "timestamp", "AttributeType": "N"},
        {"AttributeName": "userId", "AttributeType": "S"},
    ],
    "GlobalSecondaryIndexes": [
        {
            "IndexName": "by-user",
            "KeySchema": [
                {"AttributeName": "userId", "KeyType": "HASH"},
                {"AttributeName": "timestamp", "KeyType": "RANGE"},
            ],
            "Projection": {"ProjectionType": "ALL"},
        },
    ],
    "BillingMode": "PAY_PER_REQUEST",
}


@fixture(scope="session")
def dynamodb_endpoint(aws_credentials: None) -> Generator[str, None, None]:
    """Session-scoped Docker container running DynamoDB Local."""
    with DockerContainer(
        "amazon/dynamodb-local:latest",
        ports=[8000],
        _wait_strategy=HttpWaitStrategy(8000).for_status_code(400),
    ) as container:
        yield f"http://localhost:{container.get_exposed_port(8000)}"


async def _network_service(
    endpoint_url: str,
    definition: dict[str, Any],
    service: AwsDynamoDbService[Any],
) -> AsyncGenerator[AwsDynamoDbService[Any], None]:
    """Create the table, yield the opened service, then drop the table."""
    session = aioboto3.Session()
    async with session.resource(
        "dynamodb", region_name=REGION, endpoint_url=endpoint_url
    ) as dynamodb:
        table = await dynamodb.create_table(**definition)
        await table.wait_until_exists()

        async with service:
            yield service

        await table.delete()
        await table.wait_until_not_exists()


@async_fixture(params=["memory", "network"])
async def user_service(request: FixtureRequest) -> AsyncGenerator[DynamoDbService[User], None]:
    if request.param == "memory":
        yield MemoryDynamoDbService(
            USERS_TABLE,
            USER_KEY,
            User,
            store=MemoryStore(),
            indexes=USER_INDEXES,
            clock=fixed_clock,
        )
        return

    endpoint_url = request.getfixturevalue("dynamodb_endpoint")
    service = AwsDynamoDbService(
        USERS_TABLE,
        USER_KEY,
        User,
        indexes=USER_INDEXES,
        region=REGION,
        clock=fixed_clock,
        endpoint_url=endpoint_url,
    )
    async for opened in _network_service(endpoint_url, _USERS_TABLE_DEFINITION, service):
        yield opened


@async_fixture(params=["memory", "network"])
async def message_service(
    request: FixtureRequest,
) -> AsyncGenerator[DynamoDbService[Message], None]:
    if request.param == "memory":
        yield MemoryDynamoDbService(
            MESSAGES_TABLE,
            MESSAGE_KEY,
            Message,
            store=MemoryStore(),
            indexes=MESSAGE_INDEXES,
            clock=fixed_clock,
        )
        return

    endpoint_url = request.getfixturevalue("dynamodb_endpoint")
    service = AwsDynamoDbService(
        MESSAGES_TABLE,
        MESSAGE_KEY,
        Message,
        indexes=MESSAGE_INDEXES,
        region=REGION,
        clock=fixed_clock,
        endpoint_url=endpoint_url,
    )
    async for opened in _network_service(endpoint_url, _MESSAGES_TABLE_DEFINITION, service):
        yield opened
