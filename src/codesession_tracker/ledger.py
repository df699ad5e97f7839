"""
Budget and cost ledger for codesession.

PURPOSE: Validate and record AI usage, estimate cost from the pricing table
when none is supplied, and enforce optional spend ceilings before writing.
AI CONTEXT: Sits between callers (SessionService, AgentSession) and
AccountingStore.record_ai_usage. It never increments totals itself; the
store recomputes them from the usage history.

TOKEN RULES:
- A token count of 0 is a real value. Absence is None, never "falsy".
- If no total is given, total = prompt + completion (absent parts count 0).
- If neither a total nor any part is given: MissingTokensError.

COST RULES:
- Explicit cost wins.
- Otherwise cost = (prompt x input_rate + completion x output_rate) / 1M,
  rounded to 10 places. With only a total, prompt/completion are estimated
  as 70% / 30% of it (for the estimate only; the stored split stays absent).
- Unknown model with no cost: UnknownModelError.

BUDGET RULES:
- Ceiling check happens strictly before the write (inside the store's
  write transaction). A breach raises BudgetExceededError, nothing stored.
- If the total after the write meets or exceeds the ceiling, the session
  is ended and the receipt reports auto_ended=True.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from .config import Config
from .errors import (
    InvalidArgumentError,
    MissingTokensError,
    SessionNotFoundError,
    UnknownModelError,
)
from .models import round_cost
from .pricing import PricingTable
from .storage import AccountingStore

__all__ = ["BudgetLedger", "UsageQuote", "UsageReceipt", "can_afford"]

logger = logging.getLogger(__name__)


def can_afford(spent: float, estimated_cost: float, budget: float | None) -> bool:
    """
    Check whether an upcoming call would stay within budget.

    Pure predicate for pre-flight checks before an expensive upstream call.

    Args:
        spent: Cost already recorded.
        estimated_cost: Expected cost of the next call.
        budget: Ceiling, or None for unlimited.

    Returns:
        True if spent + estimated_cost <= budget (always True without budget).

    Example:
        >>> can_afford(4.0, 1.0, 5.0)
        True
        >>> can_afford(4.0, 1.01, 5.0)
        False
    """
    if budget is None:
        return True
    return round_cost(spent + estimated_cost) <= budget


@dataclass
class UsageQuote:
    """Validated token counts and cost for one usage event, before recording."""

    tokens: int
    cost: float
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    estimated: bool = False


@dataclass
class UsageReceipt:
    """
    Outcome of a recorded usage event.

    Attributes:
        session_id: Session the usage was billed to.
        cost: Cost of this event.
        tokens: Tokens of this event.
        total_cost: Session total after the write.
        total_tokens: Session token total after the write.
        estimated: True if cost came from the pricing table.
        budget: Ceiling in force, if any.
        budget_remaining: max(0, budget - total_cost), or None.
        auto_ended: True if reaching the ceiling ended the session.
    """

    session_id: int
    cost: float
    tokens: int
    total_cost: float
    total_tokens: int
    estimated: bool = False
    budget: float | None = None
    budget_remaining: float | None = None
    auto_ended: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class BudgetLedger:
    """
    Accounting logic layered on the store.

    Example:
        >>> ledger = BudgetLedger(store, PricingTable())
        >>> receipt = ledger.log_usage(sid, "anthropic", "claude-sonnet-4", tokens=12000)
        >>> receipt.estimated
        True
    """

    def __init__(self, store: AccountingStore, pricing: PricingTable | None = None) -> None:
        self.store = store
        self.pricing = pricing or PricingTable()

    # =========================================================================
    # ESTIMATION
    # =========================================================================

    def estimate_cost(
        self,
        model: str,
        prompt_tokens: float,
        completion_tokens: float,
        provider: str | None = None,
    ) -> float | None:
        """
        Estimate the cost of a call from the pricing table.

        Args:
            model: Model name.
            prompt_tokens: Input token count.
            completion_tokens: Output token count.
            provider: Optional provider, tried as "provider/model" first.

        Returns:
            Cost in dollars rounded to 10 places, or None if the model is
            not in the pricing table.

        Example:
            >>> ledger.estimate_cost("gpt-4o", 1_000_000, 0)
            2.5
        """
        rates = self.pricing.get(model, provider)
        if rates is None:
            return None
        raw = (prompt_tokens * rates["input"] + completion_tokens * rates["output"])
        return round_cost(raw / Config.PRICING_SCALE)

    def quote(
        self,
        model: str,
        tokens: int | None = None,
        cost: float | None = None,
        prompt_tokens: int | None = None,
        completion_tokens: int | None = None,
        provider: str | None = None,
    ) -> UsageQuote:
        """
        Validate token fields and resolve the cost of one usage event.

        Returns:
            UsageQuote with the total tokens and the cost to record.

        Raises:
            MissingTokensError: No total and no prompt/completion split.
            InvalidArgumentError: Negative tokens or cost.
            UnknownModelError: Cost omitted and the model has no price.
        """
        for label, value in (
            ("tokens", tokens),
            ("prompt_tokens", prompt_tokens),
            ("completion_tokens", completion_tokens),
        ):
            if value is not None and value < 0:
                raise InvalidArgumentError(f"{label} must be non-negative")
        if cost is not None and cost < 0:
            raise InvalidArgumentError("cost must be non-negative")

        if tokens is None:
            if prompt_tokens is None and completion_tokens is None:
                raise MissingTokensError()
            tokens = (prompt_tokens or 0) + (completion_tokens or 0)

        if cost is not None:
            return UsageQuote(
                tokens=tokens,
                cost=round_cost(cost),
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            )

        est_prompt, est_completion = self._estimation_split(
            tokens, prompt_tokens, completion_tokens
        )
        estimate = self.estimate_cost(model, est_prompt, est_completion, provider)
        if estimate is None:
            raise UnknownModelError(model)
        return UsageQuote(
            tokens=tokens,
            cost=estimate,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            estimated=True,
        )

    @staticmethod
    def _estimation_split(
        tokens: int, prompt_tokens: int | None, completion_tokens: int | None
    ) -> tuple[float, float]:
        if prompt_tokens is not None and completion_tokens is not None:
            return float(prompt_tokens), float(completion_tokens)
        if prompt_tokens is not None:
            return float(prompt_tokens), float(max(0, tokens - prompt_tokens))
        if completion_tokens is not None:
            return float(max(0, tokens - completion_tokens)), float(completion_tokens)
        share = Config.PROMPT_SHARE_ESTIMATE
        return tokens * share, tokens * (1 - share)

    # =========================================================================
    # RECORDING
    # =========================================================================

    def log_usage(
        self,
        session_id: int,
        provider: str,
        model: str,
        tokens: int | None = None,
        cost: float | None = None,
        prompt_tokens: int | None = None,
        completion_tokens: int | None = None,
        budget: float | None = None,
        agent_name: str | None = None,
    ) -> UsageReceipt:
        """
        Validate, budget-check and record one AI usage event.

        Args:
            session_id: Active session to bill.
            provider: Provider label (anthropic, openai...).
            model: Model label.
            tokens: Total tokens (derived from the split when None).
            cost: Explicit cost; estimated from pricing when None.
            prompt_tokens: Optional input token count.
            completion_tokens: Optional output token count.
            budget: Optional ceiling for the session's cumulative cost.
            agent_name: Optional attribution label.

        Returns:
            UsageReceipt describing the write and any auto-end.

        Raises:
            SessionNotFoundError: Session missing or not active.
            BudgetExceededError: Ceiling would be breached (nothing written).
            MissingTokensError, UnknownModelError, InvalidArgumentError:
                Caller input problems (nothing written).
        """
        if budget is not None and budget < 0:
            raise InvalidArgumentError("budget must be non-negative")
        quote = self.quote(model, tokens, cost, prompt_tokens, completion_tokens, provider)

        total_cost, total_tokens = self.store.record_ai_usage(
            session_id,
            provider,
            model,
            quote.tokens,
            quote.cost,
            prompt_tokens=quote.prompt_tokens,
            completion_tokens=quote.completion_tokens,
            agent_name=agent_name,
            budget=budget,
        )

        receipt = UsageReceipt(
            session_id=session_id,
            cost=quote.cost,
            tokens=quote.tokens,
            total_cost=total_cost,
            total_tokens=total_tokens,
            estimated=quote.estimated,
            budget=budget,
            budget_remaining=None if budget is None else max(0.0, round_cost(budget - total_cost)),
        )

        if budget is not None and total_cost >= budget:
            self.store.end_session(
                session_id, notes=f"Budget reached: ${total_cost:.2f} / ${budget:.2f}"
            )
            receipt.auto_ended = True
            logger.info(f"Session {session_id} auto-ended at budget ${budget:.2f}")

        return receipt

    def check_budget(
        self, session_id: int, budget: float | None, estimated_cost: float = 0.0
    ) -> dict[str, Any]:
        """
        Read-only budget status for a session.

        Returns:
            Dict with spent, budget, remaining and can_afford for the
            estimated cost, plus a per "provider/model" breakdown of
            tokens, cost and calls.

        Raises:
            SessionNotFoundError: If no session has this id.
        """
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        usage = self.store.get_ai_usage(session_id)
        by_model: dict[str, dict[str, Any]] = {}
        for record in usage:
            bucket = by_model.setdefault(
                f"{record.provider}/{record.model}", {"tokens": 0, "cost": 0.0, "calls": 0}
            )
            bucket["tokens"] += record.tokens
            bucket["cost"] = round_cost(bucket["cost"] + record.cost)
            bucket["calls"] += 1
        return {
            "session_id": session_id,
            "session_name": session.name,
            "tokens": session.ai_tokens,
            "calls": len(usage),
            "by_model": by_model,
            "spent": session.ai_cost,
            "budget": budget,
            "remaining": None if budget is None else max(0.0, round_cost(budget - session.ai_cost)),
            "estimated_cost": estimated_cost,
            "can_afford": can_afford(session.ai_cost, estimated_cost, budget),
        }
