# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

import pytest
from helpers import (
    Clock,
    FakeClient,
    make_action_set,
    make_pod,
    make_policy,
    make_repo,
    repo_pvc,
)

from config import OperatorConfig


@pytest.fixture()
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture()
def config() -> OperatorConfig:
    return OperatorConfig(controller_namespace="kb-system", job_ttl_seconds=0)


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def cluster_objects(client):
    """Populate the fake cluster with a ready policy, action set, repo and one pod."""
    client.add(
        make_policy(),
        make_action_set(),
        make_repo(),
        repo_pvc(),
        make_pod("mysql-0"),
    )
    return client
