"""Pytest configuration and fixtures for healthmint-compliance tests."""

from typing import Any

import pytest

from healthmint_compliance.audit.context import clear_audit_context
from healthmint_compliance.errors import DeliveryError
from healthmint_compliance.storage.buffer import MemoryBuffer
from healthmint_compliance.transport.base import Transport


class FakeTransport(Transport):
    """Records every post; raises DeliveryError while ``failing`` is set."""

    def __init__(self, failing: bool = False):
        self.failing = failing
        self.posts: list[tuple[str, dict[str, Any]]] = []

    async def post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        if self.failing:
            raise DeliveryError(f"Server unreachable: {path}")
        self.posts.append((path, body))
        return {"ok": True}

    def paths(self) -> list[str]:
        return [path for path, _ in self.posts]


@pytest.fixture(autouse=True)
def reset_audit_context():
    clear_audit_context()
    yield
    clear_audit_context()


@pytest.fixture
def buffer():
    return MemoryBuffer()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def failing_transport():
    return FakeTransport(failing=True)


@pytest.fixture
def no_key_env(monkeypatch):
    """Remove every environment source of encryption key material."""
    for name in (
        "HEALTHMINT_PHI_KEY",
        "HEALTHMINT_PHI_KEY_FILE",
        "HEALTHMINT_ENCRYPTION_SECRET",
        "HEALTHMINT_INSTALLATION_SEED",
    ):
        monkeypatch.delenv(name, raising=False)
