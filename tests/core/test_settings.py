"""Tests for Settings validation and GatewayConfig derivation."""
import pytest
from pydantic import ValidationError

from stkpay.core.config import PRODUCTION_BASE_URL, SANDBOX_BASE_URL, GatewayConfig


@pytest.fixture
def make_settings(settings_factory):
    return settings_factory


def test_simulation_refused_in_production(make_settings):
    with pytest.raises(ValidationError):
        make_settings(app_env="production", simulate_callbacks=True)


def test_simulation_allowed_outside_production(make_settings):
    settings = make_settings(app_env="staging", simulate_callbacks=True)
    assert settings.callbacks_simulated is True


def test_mode_must_be_known(make_settings):
    with pytest.raises(ValidationError):
        make_settings(mpesa_mode="bank")
    assert make_settings(mpesa_mode=" TILL ").mpesa_mode == "till"


def test_prices_must_be_positive(make_settings):
    with pytest.raises(ValidationError):
        make_settings(tier_price_gold=0)


@pytest.mark.parametrize("value", [0, 2**31])
def test_max_amount_bounded(make_settings, value):
    with pytest.raises(ValidationError):
        make_settings(mpesa_max_amount=value)
    assert make_settings().mpesa_max_amount == 250_000


def test_base_url_from_environment(make_settings):
    assert make_settings().resolved_mpesa_base_url == SANDBOX_BASE_URL
    assert make_settings(mpesa_env="production").resolved_mpesa_base_url == PRODUCTION_BASE_URL
    assert make_settings(mpesa_base_url="http://mock:8080/").resolved_mpesa_base_url == "http://mock:8080"


def test_gateway_config_missing_fields(make_settings):
    config = GatewayConfig.from_settings(make_settings(mpesa_passkey="", mpesa_callback_url=""))
    assert config.missing_fields() == ["MPESA_PASSKEY", "MPESA_CALLBACK_URL"]
    assert GatewayConfig.from_settings(make_settings()).missing_fields() == []


def test_simulator_wired_only_when_enabled(make_settings):
    from stkpay.main import create_app

    assert create_app(make_settings()).state.simulator is None
    app = create_app(make_settings(simulate_callbacks=True, simulate_callback_after_seconds=5))
    assert app.state.simulator is not None
    assert create_app(make_settings(app_env="production")).state.simulator is None
