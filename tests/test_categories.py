from __future__ import annotations

import pytest

from core.categories import build_category_rules, classify, normalize_category_hints
from core.errors import ConfigurationError
from core.models import UNCATEGORIZED


def test_classify_bulgarian_water_outage() -> None:
    result = classify("Спиране на водата в кв. Лозенец")
    assert "water" in result.categories
    assert not result.is_uncategorized


def test_classify_regex_rule() -> None:
    assert "water" in classify("Авария на В и К").categories


def test_classify_orders_like_taxonomy() -> None:
    result = classify("Спиране на водата заради ремонт")
    assert result.categories == ["construction-and-repairs", "water"]


def test_classify_without_match_is_uncategorized() -> None:
    for text in ("", "business meeting"):
        result = classify(text)
        assert result.categories == [UNCATEGORIZED]
        assert result.is_uncategorized


def test_hints_are_kept_and_validated() -> None:
    result = classify("nothing relevant", hints=["Heating", "bogus"])
    assert result.categories == ["heating"]
    assert normalize_category_hints(["WATER", "water", 5, "uncategorized"]) == ["water"]


def test_config_keywords_extend_rules() -> None:
    rules = build_category_rules({"parking": {"keywords": ["Garage"]}})
    assert classify("new garage opens", rules=rules).categories == ["parking"]


def test_unknown_config_category_is_an_error() -> None:
    with pytest.raises(ConfigurationError):
        build_category_rules({"bogus": {"keywords": ["x"]}})
