"""Offline mock provider and the package-level factory."""

from __future__ import annotations

import pytest

import castor
from castor import Driver, ProviderConfig, create_driver
from castor.models import Message
from castor.pricing import PricingSource
from castor.providers import MockTransport

pytestmark = pytest.mark.unit


def test_mock_provider_echoes_last_user_message() -> None:
    with create_driver("mock") as driver:
        response = driver.send_messages(
            [Message.system("ignored"), Message.user("hello world")]
        )

    assert response.content == "echo: hello world"
    assert response.finish_reason == "stop"
    assert response.provider == "mock"
    assert response.cost is not None
    assert response.cost.total_cost == 0.0


def test_mock_streaming_matches_blocking_reply() -> None:
    driver = create_driver("mock")

    out = list(driver.send_streaming_message("one two three"))

    assert all(r.partial for r in out[:-1])
    assert out[-1].content == "echo: one two three"
    assert "".join(r.content for r in out[:-1]) == out[-1].content


def test_use_mock_keeps_provider_identity() -> None:
    driver = Driver(ProviderConfig(provider="openai", use_mock=True))

    response = driver.send_message("price me")

    assert isinstance(driver.transport, MockTransport)
    assert response.provider == "openai"
    assert response.cost is not None
    assert response.cost.source is PricingSource.STATIC
    assert "Authorization" not in driver.transport.requests[0].headers


def test_mock_models_and_credentials() -> None:
    driver = create_driver("mock", model="mock-large")

    assert [m.id for m in driver.get_available_models()] == ["mock-large"]
    assert driver.validate_credentials().valid is True
    assert driver.get_capabilities().function_calling is True


def test_create_driver_accepts_config_and_driver_kwargs() -> None:
    transport = MockTransport()
    driver = create_driver(ProviderConfig(provider="mock"), transport=transport)

    driver.send_message("hi")

    assert driver.transport is transport
    assert len(transport.requests) == 1


def test_package_exports() -> None:
    assert castor.__version__
    for name in castor.__all__:
        assert hasattr(castor, name), name
