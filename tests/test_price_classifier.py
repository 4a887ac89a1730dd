from types import SimpleNamespace

import pytest

from billing_processor.models.account import SubscriptionTier
from billing_processor.services.price_classifier import PriceCatalog, PriceClassifier, PriceKind


class TestClassify:
    def test_base_price_maps_to_tier(self, classifier):
        result = classifier.classify("price_enterprise")
        assert result.kind == PriceKind.BASE
        assert result.is_base
        assert result.tier == SubscriptionTier.ENTERPRISE
        assert result.addon_name is None

    def test_addon_price_maps_to_addon_name(self, classifier):
        result = classifier.classify("price_data_export")
        assert result.is_addon
        assert result.addon_name == "data_export"
        assert result.tier is None

    @pytest.mark.parametrize("price_ref", ["price_mystery", "", None])
    def test_anything_else_is_unknown(self, classifier, price_ref):
        result = classifier.classify(price_ref)
        assert result.kind == PriceKind.UNKNOWN
        assert not result.is_base and not result.is_addon


class TestCatalog:
    def test_price_cannot_be_both_base_and_addon(self):
        with pytest.raises(ValueError):
            PriceCatalog(
                version="bad",
                base_prices={"price_x": SubscriptionTier.STARTER},
                addon_prices={"price_x": "extra"},
            )

    def test_base_price_cannot_map_to_none(self):
        with pytest.raises(ValueError):
            PriceCatalog(version="bad", base_prices={"price_x": SubscriptionTier.NONE})

    def test_catalog_is_read_only(self, catalog):
        with pytest.raises(TypeError):
            catalog.base_prices["price_new"] = SubscriptionTier.STARTER

    def test_from_settings_skips_unset_prices(self):
        settings = SimpleNamespace(
            stripe_price_starter="price_s",
            stripe_price_professional="",
            stripe_price_enterprise="price_e",
            stripe_addon_prices={"price_a": "priority_support", "": "ignored"},
            price_catalog_version="7",
        )
        catalog = PriceCatalog.from_settings(settings)
        classifier = PriceClassifier(catalog)

        assert catalog.version == "7"
        assert dict(catalog.base_prices) == {
            "price_s": SubscriptionTier.STARTER,
            "price_e": SubscriptionTier.ENTERPRISE,
        }
        assert classifier.classify("price_a").addon_name == "priority_support"
