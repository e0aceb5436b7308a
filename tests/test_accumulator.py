from __future__ import annotations

from airsession.accumulator import ResultAccumulator


def test_append_counts_every_fragment() -> None:
    acc = ResultAccumulator()
    assert acc.append("He") == 1
    assert acc.append("") == 2
    assert acc.append("llo") == 3
    assert acc.text == "Hello"
    assert acc.token_count == 3


def test_reset_clears_text_and_count() -> None:
    acc = ResultAccumulator()
    acc.append("stale")
    acc.reset()
    assert acc.text == ""
    assert acc.token_count == 0
