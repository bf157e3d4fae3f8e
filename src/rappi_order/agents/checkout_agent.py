"""Checkout specialist agent.

Produces the dry-run summary a human reviews before any payment step, and
evaluates the interactive payment gate. Neither function ever submits an
order: with :data:`~rappi_order.policy.REAL_PURCHASES_DISABLED` set, the gate
stops at "attempted but not permitted".
"""

from __future__ import annotations

import structlog

from rappi_order.models import CartPlan, CartTotals, DryRunLine, DryRunSummary, PaymentGate
from rappi_order.policy import REAL_PURCHASES_DISABLED

logger = structlog.get_logger(__name__)

CONFIRM_PAY_PHRASE = "CONFIRM PAY"


def build_dry_run_summary(plan: CartPlan) -> DryRunSummary:
    """Summarise *plan*; the subtotal is recomputed from its matched lines."""
    subtotal = sum(line.line_subtotal for line in plan.matched_items)
    return DryRunSummary(
        items=[
            DryRunLine(
                name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                subtotal=line.line_subtotal,
            )
            for line in plan.matched_items
        ],
        unresolved_items=list(plan.unresolved_items),
        currency=plan.currency or "ARS",
        totals=CartTotals(
            subtotal=subtotal,
            estimated_fees=plan.totals.estimated_fees,
            grand_total=plan.totals.grand_total,
        ),
    )


def guard_payment_execution(
    confirm_pay: bool,
    first_confirmation: bool | None = None,
    typed_phrase: str | None = None,
) -> PaymentGate:
    """Evaluate the two-step payment confirmation.

    Parameters
    ----------
    confirm_pay:
        Whether the caller explicitly asked to continue towards payment.
    first_confirmation:
        Answer to the yes/no question asked after *confirm_pay*.
    typed_phrase:
        Text the user typed at the second prompt; must equal
        :data:`CONFIRM_PAY_PHRASE`.
    """
    if not confirm_pay:
        return PaymentGate(
            attempted=False,
            permitted=False,
            message=(
                "Payment flow not attempted. Add --confirm-pay and pass second confirmation "
                "to continue to pre-payment review only."
            ),
        )

    if not first_confirmation:
        return PaymentGate(
            attempted=False,
            permitted=False,
            message="User cancelled before second confirmation.",
        )

    if (typed_phrase or "").strip() != CONFIRM_PAY_PHRASE:
        return PaymentGate(
            attempted=False,
            permitted=False,
            message="Second confirmation phrase mismatch; payment flow remains blocked.",
        )

    if REAL_PURCHASES_DISABLED:
        logger.warning("payment_blocked_by_policy")
        return PaymentGate(
            attempted=True,
            permitted=False,
            message=(
                "Real purchase submission is permanently disabled by policy. "
                "Simulation stopped before any buy action."
            ),
        )

    return PaymentGate(attempted=True, permitted=True, message="Payment execution permitted.")
