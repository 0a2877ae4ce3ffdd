from decimal import Decimal

from src.models import SystemConfig
from src.services.settings_service import SettingsService, mask_secret, serialize_settings


def test_resolve_falls_back_to_environment(db_session):
    settings = SettingsService(db_session).resolve()

    assert settings.tax_rate == Decimal("0.05")
    assert settings.shipping_fee == 50
    assert settings.gateway.merchant_id == "MERCHANTUAT"
    assert settings.gateway.is_configured
    assert not settings.gateway.is_live
    assert settings.gateway.base_url.startswith("https://api-preprod")


def test_record_values_take_precedence(db_session):
    service = SettingsService(db_session)

    ok, _, _ = service.update_section("payment", {"merchantId": "LIVEMERCHANT", "saltKey": "rotated", "isLiveMode": True})
    assert ok

    gateway = service.resolve().gateway
    assert gateway.merchant_id == "LIVEMERCHANT"
    assert gateway.salt_key == "rotated"
    assert gateway.is_live
    assert db_session.query(SystemConfig).count() == 1


def test_invalid_values_are_rejected(db_session):
    service = SettingsService(db_session)

    assert not service.update_section("pricing", {"taxRate": "1.5"})[0]
    assert not service.update_section("pricing", {"shippingFee": -10})[0]
    assert not service.update_section("payment", {"saltIndex": "one"})[0]
    assert not service.update_section("unknown", {})[0]
    assert service.resolve().tax_rate == Decimal("0.05")


def test_serialized_settings_mask_secrets(db_session):
    service = SettingsService(db_session)
    service.update_section("delivery", {"apiToken": "carrier-token-1234"})

    body = serialize_settings(service.get_record(), service.resolve())

    assert body["delivery"]["apiToken"].endswith("1234")
    assert "carrier" not in body["delivery"]["apiToken"]
    assert body["payment"]["saltKey"] == mask_secret("test-salt-key")
    assert mask_secret("") == ""
