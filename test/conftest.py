"""Shared test fixtures.

This module provides:
- Fake AWS credentials for every test session
- A fresh ``MemoryStore`` per test, so emulated tables never leak between tests
- Emulated services bound to the sample tables, with a fixed clock
"""

from collections.abc import Generator
from os import environ

import structlog
from pytest import fixture
from sample_models import (
    MESSAGE_INDEXES,
    MESSAGE_KEY,
    PROFILE_KEY,
    USER_INDEXES,
    USER_KEY,
    Message,
    Profile,
    User,
    fixed_clock,
)

from pydynastore.memory import MemoryDynamoDbService, MemoryStore


@fixture(scope="session", autouse=True)
def aws_credentials() -> None:
    environ["AWS_ACCESS_KEY_ID"] = "testing"
    environ["AWS_SECRET_ACCESS_KEY"] = "testing"  # noqa: S105
    environ["AWS_SECURITY_TOKEN"] = "testing"  # noqa: S105
    environ["AWS_SESSION_TOKEN"] = "testing"  # noqa: S105
    environ["AWS_DEFAULT_REGION"] = "us-east-1"


@fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    yield
    structlog.reset_defaults()


@fixture
def store() -> Generator[MemoryStore, None, None]:
    memory_store = MemoryStore()

    yield memory_store

    memory_store.clear()


@fixture
def users(store: MemoryStore) -> MemoryDynamoDbService[User]:
    return MemoryDynamoDbService(
        "test-users",
        USER_KEY,
        User,
        store=store,
        indexes=USER_INDEXES,
        clock=fixed_clock,
    )


@fixture
def messages(store: MemoryStore) -> MemoryDynamoDbService[Message]:
    return MemoryDynamoDbService(
        "test-messages",
        MESSAGE_KEY,
        Message,
        store=store,
        indexes=MESSAGE_INDEXES,
        clock=fixed_clock,
    )


@fixture
def profiles(store: MemoryStore) -> MemoryDynamoDbService[Profile]:
    return MemoryDynamoDbService("test-profiles", PROFILE_KEY, Profile, store=store)
