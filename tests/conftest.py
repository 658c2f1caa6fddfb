from __future__ import annotations

from pathlib import Path

import pytest

from shellfleet.group import InstanceGroup
from shellfleet.types import Credentials
from tests.fakes import FakeClock, FakeCloud, FakeTransport, make_instance


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud([make_instance(0)])


@pytest.fixture
def credentials() -> Credentials:
    return Credentials("ubuntu", key_file=Path("/keys/test.pem"))


@pytest.fixture
def group(cloud: FakeCloud, transport: FakeTransport, clock: FakeClock) -> InstanceGroup:
    return InstanceGroup(cloud, transport, clock=clock, sleep=clock.sleep)
