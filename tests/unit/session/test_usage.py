from __future__ import annotations

import pytest

from autocycle.session.usage import TokenUsage, estimate_cost


def test_input_replaced_output_accumulates() -> None:
    usage = TokenUsage()
    usage.apply({"input_tokens": 1000, "output_tokens": 10, "cache_read_input_tokens": 5})
    usage.apply({"input_tokens": 1200, "output_tokens": 20, "cache_creation_input_tokens": 3})
    assert usage.input_tokens == 1200
    assert usage.output_tokens == 30
    assert usage.cache_read_tokens == 5
    assert usage.cache_creation_tokens == 3
    assert usage.total == 1230


def test_compaction_flagged_below_half() -> None:
    usage = TokenUsage()
    assert usage.apply({"input_tokens": 10_000}) is False
    assert usage.apply({"input_tokens": 4_000}) is True
    assert usage.input_tokens == 4_000


def test_drop_to_exactly_half_is_not_compaction() -> None:
    usage = TokenUsage()
    usage.apply({"input_tokens": 10_000})
    assert usage.apply({"input_tokens": 5_000}) is False


def test_first_report_never_compaction() -> None:
    usage = TokenUsage()
    assert usage.apply({"input_tokens": 0}) is False
    assert usage.apply({"input_tokens": 100}) is False


def test_report_without_input_keeps_previous() -> None:
    usage = TokenUsage()
    usage.apply({"input_tokens": 500})
    assert usage.apply({"output_tokens": 5}) is False
    assert usage.input_tokens == 500


def test_custom_drop_ratio() -> None:
    usage = TokenUsage()
    usage.apply({"input_tokens": 1000})
    assert usage.apply({"input_tokens": 700}, drop_ratio=0.8) is True


def test_garbage_values_ignored() -> None:
    usage = TokenUsage()
    usage.apply({"input_tokens": "lots", "output_tokens": True})
    assert usage.input_tokens == 0
    assert usage.output_tokens == 0


@pytest.mark.parametrize(
    ("model", "expected"),
    [
        ("claude-opus-4", 15.0 + 75.0),
        ("claude-sonnet-4", 3.0 + 15.0),
        ("claude-haiku", 0.25 + 1.25),
        ("", 3.0 + 15.0),
    ],
)
def test_estimate_cost_per_model(model: str, expected: float) -> None:
    usage = TokenUsage(input_tokens=1_000_000, output_tokens=1_000_000)
    assert estimate_cost(usage, model) == pytest.approx(expected)


def test_cache_reads_discounted() -> None:
    usage = TokenUsage(cache_read_tokens=1_000_000)
    assert estimate_cost(usage, "sonnet") == pytest.approx(0.3)
