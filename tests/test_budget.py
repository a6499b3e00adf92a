from __future__ import annotations

import pytest

from smart_upload.pipeline.budget import SessionBudget
from smart_upload.utils.error_taxonomy import BudgetExhaustedError


def test_budget_denies_after_call_limit_with_reason() -> None:
    budget = SessionBudget(max_llm_calls=2, max_input_tokens=0)

    assert budget.check().allowed is True
    budget.record(100)
    assert budget.check().allowed is True
    budget.record(100)

    decision = budget.check()
    assert decision.allowed is False
    assert decision.reason == "LLM call budget exhausted: 2/2 calls used"


def test_budget_denies_after_token_limit() -> None:
    budget = SessionBudget(max_llm_calls=0, max_input_tokens=1000)
    budget.record(999)
    assert budget.check().allowed is True

    budget.record(1)
    decision = budget.check()

    assert decision.allowed is False
    assert "Input token budget exhausted: 1000/1000" in str(decision.reason)


def test_budget_zero_limits_mean_unlimited() -> None:
    budget = SessionBudget(max_llm_calls=0, max_input_tokens=0)
    for _ in range(50):
        budget.record(1_000_000)

    assert budget.check().allowed is True
    assert budget.llm_calls == 50


def test_budget_require_raises_with_tracker_reason() -> None:
    budget = SessionBudget(max_llm_calls=1)
    budget.require()
    budget.record(10)

    with pytest.raises(BudgetExhaustedError) as exc_info:
        budget.require()

    assert exc_info.value.reason == "LLM call budget exhausted: 1/1 calls used"
    assert exc_info.value.code == "BUDGET_EXHAUSTED"


def test_budget_record_counts_failed_calls_and_ignores_missing_tokens() -> None:
    budget = SessionBudget()
    budget.record(None)
    budget.record(-5)

    snapshot = budget.snapshot()
    assert snapshot.llm_calls == 2
    assert snapshot.input_tokens == 0
    assert snapshot.max_llm_calls == 5
    assert snapshot.max_input_tokens == 500_000


def test_budget_rejects_negative_limits() -> None:
    with pytest.raises(ValueError):
        SessionBudget(max_llm_calls=-1)
