"""Shared fixtures: isolated bus, fake transports, registry."""

from __future__ import annotations

import pytest

from slackrelay.gateway.bus import Bus
from slackrelay.gateway.registry import ConnectionRegistry
from tests.mocks import FakeTransportFactory


@pytest.fixture
def bus() -> Bus:
    return Bus()


@pytest.fixture
def transports() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def registry(bus: Bus, transports: FakeTransportFactory) -> ConnectionRegistry:
    return ConnectionRegistry(bus, transports, request_timeout=0.5)
