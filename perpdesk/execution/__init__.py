"""perpdesk.execution

Execution layer: turn picks and operator selections into exchange orders, and
keep the local order/position view reconciled with the exchange.

Nothing here decides *what* to trade. It only sizes, checks and sends.
"""

from __future__ import annotations

from perpdesk.execution.exchange import ExchangeApi, HttpExchangeApi, InMemoryExchangeApi
from perpdesk.execution.gate import PolicyCheckResult, check_echo, check_policy, check_strict
from perpdesk.execution.rate_limit import RateLimitTracker
from perpdesk.execution.reconciliation import ActionOutcome, ReconciliationPoller, TickResult
from perpdesk.execution.sizer import OrderPlan, OrderSizer, risk_fraction_for
from perpdesk.execution.submitter import OrderSubmitter, SubmissionReport

__all__ = [
    "ExchangeApi",
    "HttpExchangeApi",
    "InMemoryExchangeApi",
    "PolicyCheckResult",
    "check_policy",
    "check_strict",
    "check_echo",
    "RateLimitTracker",
    "ReconciliationPoller",
    "TickResult",
    "ActionOutcome",
    "OrderPlan",
    "OrderSizer",
    "risk_fraction_for",
    "OrderSubmitter",
    "SubmissionReport",
]
