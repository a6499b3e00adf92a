from __future__ import annotations

from dataclasses import dataclass

from smart_upload.utils.error_taxonomy import BudgetExhaustedError


@dataclass(frozen=True, slots=True)
class BudgetDecision:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class BudgetSnapshot:
    llm_calls: int
    input_tokens: int
    max_llm_calls: int
    max_input_tokens: int


class SessionBudget:
    """Call and input-token ceilings for one processing attempt of one item.

    A limit of 0 means unlimited. ``check`` goes right before a model call,
    ``record`` right after it, whether or not the call succeeded. Instances
    are never shared between items or attempts and are not persisted.
    """

    def __init__(self, *, max_llm_calls: int = 5, max_input_tokens: int = 500_000) -> None:
        if max_llm_calls < 0 or max_input_tokens < 0:
            raise ValueError("budget limits must be >= 0")
        self.max_llm_calls = max_llm_calls
        self.max_input_tokens = max_input_tokens
        self._llm_calls = 0
        self._input_tokens = 0

    @property
    def llm_calls(self) -> int:
        return self._llm_calls

    @property
    def input_tokens(self) -> int:
        return self._input_tokens

    def check(self) -> BudgetDecision:
        if self.max_llm_calls > 0 and self._llm_calls >= self.max_llm_calls:
            return BudgetDecision(
                allowed=False,
                reason=(
                    "LLM call budget exhausted: "
                    f"{self._llm_calls}/{self.max_llm_calls} calls used"
                ),
            )
        if self.max_input_tokens > 0 and self._input_tokens >= self.max_input_tokens:
            return BudgetDecision(
                allowed=False,
                reason=(
                    "Input token budget exhausted: "
                    f"{self._input_tokens}/{self.max_input_tokens} tokens used"
                ),
            )
        return BudgetDecision(allowed=True)

    def require(self) -> None:
        decision = self.check()
        if not decision.allowed:
            raise BudgetExhaustedError(decision.reason or "budget exhausted")

    def record(self, prompt_tokens: int | None = 0) -> None:
        self._llm_calls += 1
        self._input_tokens += max(0, int(prompt_tokens or 0))

    def snapshot(self) -> BudgetSnapshot:
        return BudgetSnapshot(
            llm_calls=self._llm_calls,
            input_tokens=self._input_tokens,
            max_llm_calls=self.max_llm_calls,
            max_input_tokens=self.max_input_tokens,
        )
