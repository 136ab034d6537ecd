"""Shared fixtures."""

import pytest

from releasepipe.core.binder import ParameterBinder
from releasepipe.core.errors import RetryPolicy
from releasepipe.core.provisioner import AgentProvisioner
from releasepipe.core.publisher import RegistryPublisher

from fakes import FakeBuilder, FakePlatform, FakeRegistry, VALID_CONFIG, release_template


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def provisioner(platform):
    return AgentProvisioner(platform, timeout=1.0, poll_interval=0.01)


@pytest.fixture
def publisher():
    return RegistryPublisher(FakeBuilder(), FakeRegistry(),
                             RetryPolicy(max_attempts=3, retry_delay=0.0), sleep=lambda _: None)


@pytest.fixture
def template():
    return release_template()


@pytest.fixture
def bound_run(template):
    return ParameterBinder().bind(template, VALID_CONFIG)

