"""
Tests for ad identifier normalization (the reconciliation join key).
"""

import pytest

from recon_engine.normalize import normalize_ad_id


def test_query_fragment_yields_ad_id():
    assert normalize_ad_id("ad_id=12345678901") == "12345678901"


def test_all_digits_unchanged():
    assert normalize_ad_id("120210000111222333") == "120210000111222333"


def test_no_digits_returns_trimmed_input():
    assert normalize_ad_id("  no-numbers-here  ") == "no-numbers-here"


@pytest.mark.parametrize("raw", [None, "", "   "])
def test_empty_values(raw):
    assert normalize_ad_id(raw) == ""


def test_longest_digit_run_wins():
    assert normalize_ad_id("camp_12345678_ad_120210000111222333_v2") == "120210000111222333"


def test_equal_length_runs_pick_first():
    assert normalize_ad_id("x11111111y22222222") == "11111111"
    assert normalize_ad_id("x22222222y11111111") == "22222222"


def test_utm_with_suffix_matches_plain_ad_id():
    assert normalize_ad_id("camp_ad_id=120210000111222333_v2") == normalize_ad_id("120210000111222333")


def test_short_ad_id_parameter_in_url():
    assert normalize_ad_id("https://shop.example/p?utm_source=fb&ad_id=1234") == "1234"


def test_short_digit_runs_without_ad_id_kept_verbatim():
    assert normalize_ad_id("promo-2025") == "promo-2025"


def test_non_ascii_digits_are_not_digits():
    # Arabic-Indic digits must not be treated as an id
    assert normalize_ad_id("٣٣٣٣٣٣٣٣٣") == "٣٣٣٣٣٣٣٣٣"
