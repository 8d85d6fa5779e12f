"""Shared test fixtures for ec2runner."""

from __future__ import annotations

import pytest

from fakes import FakeCompute, FakeRegistration, make_spec, online
from ec2runner.models import ProvisioningSpec


@pytest.fixture
def compute() -> FakeCompute:
    return FakeCompute()


@pytest.fixture
def registration() -> FakeRegistration:
    return FakeRegistration(runners=[[online()]])


@pytest.fixture
def spec() -> ProvisioningSpec:
    return make_spec()
