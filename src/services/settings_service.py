from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.config import Config
from src.models import SystemConfig


@dataclass(frozen=True)
class GatewaySettings:
    merchant_id: str
    salt_key: str
    salt_index: int
    is_live: bool
    live_url: str
    sandbox_url: str
    timeout_seconds: float

    @property
    def base_url(self) -> str:
        return (self.live_url if self.is_live else self.sandbox_url).rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.merchant_id and self.salt_key)


@dataclass(frozen=True)
class RuntimeSettings:
    """Settings snapshot for a single operation. Never cached between requests."""

    store_name: str
    support_email: str
    support_phone: str
    tax_rate: Decimal
    shipping_fee: int
    delivery_api_token: str
    gateway: GatewaySettings


SECTION_FIELDS: Dict[str, Tuple[str, ...]] = {
    "general": ("storeName", "supportEmail", "supportPhone"),
    "payment": ("provider", "merchantId", "saltKey", "saltIndex", "isLiveMode"),
    "delivery": ("provider", "apiToken"),
    "pricing": ("taxRate", "shippingFee"),
}


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


class SettingsService:
    """Reads and updates the SystemConfig singleton, falling back to Config."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def get_record(self) -> Optional[SystemConfig]:
        return (
            self.db.query(SystemConfig)
            .filter_by(singleton_id=SystemConfig.SINGLETON_ID)
            .first()
        )

    def get_or_create_record(self) -> SystemConfig:
        record = self.get_record()
        if record is not None:
            return record
        record = SystemConfig(singleton_id=SystemConfig.SINGLETON_ID)
        try:
            self.db.add(record)
            self.db.commit()
        except IntegrityError:
            # Another request created it first
            self.db.rollback()
            record = self.get_record()
        return record

    def resolve(self) -> RuntimeSettings:
        record = self.get_record()

        def field(name: str) -> Any:
            return getattr(record, name) if record is not None else None

        salt_index = _first(field("salt_index"), Config.PHONEPE_SALT_INDEX)
        is_live = field("is_live_mode")
        tax_rate = _first(field("tax_rate"), Config.TAX_RATE)
        shipping_fee = _first(field("shipping_fee"), Config.SHIPPING_FEE)

        return RuntimeSettings(
            store_name=_first(field("store_name"), Config.STORE_NAME),
            support_email=_first(field("support_email"), Config.MAIL_FROM) or "",
            support_phone=field("support_phone") or "",
            tax_rate=Decimal(str(tax_rate)),
            shipping_fee=int(shipping_fee),
            delivery_api_token=_first(field("delivery_api_token"), Config.DELIVERY_API_TOKEN) or "",
            gateway=GatewaySettings(
                merchant_id=_first(field("merchant_id"), Config.PHONEPE_MERCHANT_ID) or "",
                salt_key=_first(field("salt_key"), Config.PHONEPE_SALT_KEY) or "",
                salt_index=int(salt_index),
                is_live=Config.PAYMENT_LIVE_MODE if is_live is None else bool(is_live),
                live_url=Config.PHONEPE_LIVE_URL,
                sandbox_url=Config.PHONEPE_SANDBOX_URL,
                timeout_seconds=Config.GATEWAY_TIMEOUT_SECONDS,
            ),
        )

    def update_section(self, section: str, data: Dict[str, Any]) -> Tuple[bool, str, Optional[SystemConfig]]:
        if section not in SECTION_FIELDS:
            return False, f"Unknown settings section: {section}", None
        if not isinstance(data, dict):
            return False, "Settings body must be an object", None

        record = self.get_or_create_record()
        try:
            if section == "general":
                self._apply_general(record, data)
            elif section == "payment":
                self._apply_payment(record, data)
            elif section == "delivery":
                self._apply_delivery(record, data)
            else:
                self._apply_pricing(record, data)
        except ValueError as exc:
            self.db.rollback()
            return False, str(exc), None

        self.db.commit()
        self.logger.info(
            "System settings updated",
            extra={"section": section, "fields": sorted(k for k in data if k in SECTION_FIELDS[section])},
        )
        return True, f"{section.capitalize()} settings updated", record

    @staticmethod
    def _apply_general(record: SystemConfig, data: Dict[str, Any]) -> None:
        if "storeName" in data:
            record.store_name = data["storeName"] or None
        if "supportEmail" in data:
            record.support_email = data["supportEmail"] or None
        if "supportPhone" in data:
            record.support_phone = data["supportPhone"] or None

    @staticmethod
    def _apply_payment(record: SystemConfig, data: Dict[str, Any]) -> None:
        if "provider" in data:
            record.payment_provider = data["provider"] or None
        if "merchantId" in data:
            record.merchant_id = data["merchantId"] or None
        if "saltKey" in data:
            record.salt_key = data["saltKey"] or None
        if "saltIndex" in data:
            salt_index = data["saltIndex"]
            if salt_index in (None, ""):
                record.salt_index = None
            else:
                try:
                    record.salt_index = int(salt_index)
                except (TypeError, ValueError):
                    raise ValueError("saltIndex must be an integer")
        if "isLiveMode" in data:
            record.is_live_mode = bool(data["isLiveMode"])

    @staticmethod
    def _apply_delivery(record: SystemConfig, data: Dict[str, Any]) -> None:
        if "provider" in data:
            record.delivery_provider = data["provider"] or None
        if "apiToken" in data:
            record.delivery_api_token = data["apiToken"] or None

    @staticmethod
    def _apply_pricing(record: SystemConfig, data: Dict[str, Any]) -> None:
        if "taxRate" in data:
            try:
                tax_rate = Decimal(str(data["taxRate"]))
            except (InvalidOperation, ValueError):
                raise ValueError("taxRate must be a decimal fraction such as 0.05")
            if tax_rate < 0 or tax_rate >= 1:
                raise ValueError("taxRate must be between 0 and 1")
            record.tax_rate = tax_rate
        if "shippingFee" in data:
            fee = data["shippingFee"]
            if isinstance(fee, bool) or not isinstance(fee, int) or fee < 0:
                raise ValueError("shippingFee must be a non-negative integer")
            record.shipping_fee = fee


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return ""
    return "*" * max(0, len(value) - 4) + value[-4:]


def serialize_settings(record: Optional[SystemConfig], settings: RuntimeSettings) -> Dict[str, Any]:
    """Effective settings for the admin screen; secrets are masked."""
    return {
        "general": {
            "storeName": settings.store_name,
            "supportEmail": settings.support_email,
            "supportPhone": settings.support_phone,
        },
        "payment": {
            "provider": (record.payment_provider if record else None) or "PhonePe",
            "merchantId": settings.gateway.merchant_id,
            "saltKey": mask_secret(settings.gateway.salt_key),
            "saltIndex": settings.gateway.salt_index,
            "isLiveMode": settings.gateway.is_live,
        },
        "delivery": {
            "provider": (record.delivery_provider if record else None) or "Delhivery",
            "apiToken": mask_secret(settings.delivery_api_token),
        },
        "pricing": {
            "taxRate": str(settings.tax_rate),
            "shippingFee": settings.shipping_fee,
        },
    }
