"""Shared fixtures for bridge tests."""

import pytest

from serialbridge.bridge import Bridge
from serialbridge.events import SessionConnected
from tests.fakes import FakeBrokerClient, FakeSession


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def client():
    return FakeBrokerClient()


@pytest.fixture
def bridge(session):
    return Bridge(session)


@pytest.fixture
def connected_bridge(bridge, session, client):
    """A bridge whose broker session is up."""
    session.emit(SessionConnected(client))
    return bridge
