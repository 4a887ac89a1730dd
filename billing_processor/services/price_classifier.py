from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional
from types import MappingProxyType
import logging

from billing_processor.models.account import SubscriptionTier

logger = logging.getLogger(__name__)


class PriceKind(str, Enum):
    BASE = "base"
    ADDON = "addon"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class PriceClassification:
    kind: PriceKind
    tier: Optional[SubscriptionTier] = None  # Only set for base plan prices
    addon_name: Optional[str] = None  # Only set for add-on prices

    @property
    def is_base(self) -> bool:
        return self.kind == PriceKind.BASE

    @property
    def is_addon(self) -> bool:
        return self.kind == PriceKind.ADDON


UNKNOWN_PRICE = PriceClassification(kind=PriceKind.UNKNOWN)


@dataclass(frozen=True)
class PriceCatalog:
    """Administered price mapping; read-only for the lifetime of the process"""
    version: str
    base_prices: Mapping[str, SubscriptionTier] = field(default_factory=dict)
    addon_prices: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        overlap = set(self.base_prices) & set(self.addon_prices)
        if overlap:
            raise ValueError(f"Prices configured as both base plan and add-on: {sorted(overlap)}")
        if SubscriptionTier.NONE in self.base_prices.values():
            raise ValueError("A base plan price cannot map to the 'none' tier")
        object.__setattr__(self, "base_prices", MappingProxyType(dict(self.base_prices)))
        object.__setattr__(self, "addon_prices", MappingProxyType(dict(self.addon_prices)))

    @classmethod
    def from_settings(cls, settings) -> "PriceCatalog":
        """Build the catalog from configured Stripe price ids, ignoring unset ones"""
        base_prices: Dict[str, SubscriptionTier] = {}
        for price_id, tier in (
            (settings.stripe_price_starter, SubscriptionTier.STARTER),
            (settings.stripe_price_professional, SubscriptionTier.PROFESSIONAL),
            (settings.stripe_price_enterprise, SubscriptionTier.ENTERPRISE),
        ):
            if price_id:
                base_prices[price_id] = tier

        addon_prices = {price_id: name for price_id, name in settings.stripe_addon_prices.items() if price_id}
        return cls(
            version=settings.price_catalog_version,
            base_prices=base_prices,
            addon_prices=addon_prices,
        )


class PriceClassifier:
    """Maps a provider price id to base plan / add-on / unknown.

    Unknown is the default for anything not in the catalog: an unrecognized
    price must never be allowed to change base plan state.
    """

    def __init__(self, catalog: PriceCatalog):
        self.catalog = catalog
        logger.info(
            f"Price catalog v{catalog.version} loaded: "
            f"{len(catalog.base_prices)} base plan price(s), {len(catalog.addon_prices)} add-on price(s)"
        )

    def classify(self, price_ref: Optional[str]) -> PriceClassification:
        if not price_ref:
            return UNKNOWN_PRICE

        tier = self.catalog.base_prices.get(price_ref)
        if tier is not None:
            return PriceClassification(kind=PriceKind.BASE, tier=tier)

        addon_name = self.catalog.addon_prices.get(price_ref)
        if addon_name is not None:
            return PriceClassification(kind=PriceKind.ADDON, addon_name=addon_name)

        return UNKNOWN_PRICE
