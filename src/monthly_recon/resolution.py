"""Sequential, operator-driven resolution of divergent invoices.

The workflow is an immutable cursor over the divergence queue. Each call to
:meth:`DivergenceResolutionWorkflow.resolve` returns a new workflow with the
current record rewritten and the cursor advanced, so callers can keep earlier
snapshots around (for example to render a "previous" screen) without copying.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Mapping, Optional, Sequence, Tuple, Union

from . import log
from .constants import (
    DECISION_CODES,
    DEFAULT_SELLER_LABELS,
    DecisionAction,
    DivergenceStatus,
    SellerPlaceholder,
)
from .exceptions import IntegrityError, ValidationError
from .reconciliation import build_divergence_queue, seller_label
from .records import DecisionRecord, DivergenceQueueItem, ReconciledInvoice


@dataclass(frozen=True)
class ResolutionDecision:
    """Operator decision for the record under the cursor.

    ``seller_code`` is only meaningful for :attr:`DecisionAction.ASSIGN_SELLER`.
    """

    action: DecisionAction
    seller_code: Optional[str] = None


@dataclass(frozen=True)
class ResolutionOutcome:
    """Finalized invoice list produced once the queue is exhausted."""

    invoices: Tuple[ReconciledInvoice, ...]
    resolved_count: int
    dropped_count: int


def parse_decision(
    code: str,
    *,
    seller_labels: Mapping[str, str] = DEFAULT_SELLER_LABELS,
) -> ResolutionDecision:
    """Translate an operator-typed code into a :class:`ResolutionDecision`.

    Args:
        code (str): Either a decision shortcut (``"1"``, ``"DATE_XML"`` ...)
            or a register seller code such as ``"E"``.
        seller_labels (Mapping[str, str]): Known register seller codes.

    Returns:
        ResolutionDecision: Parsed decision.

    Raises:
        IntegrityError: If ``code`` matches neither a shortcut nor a seller.
    """

    normalized = str(code).strip().upper()
    if normalized in DECISION_CODES:
        return ResolutionDecision(action=DECISION_CODES[normalized])
    if normalized in seller_labels:
        return ResolutionDecision(action=DecisionAction.ASSIGN_SELLER, seller_code=normalized)
    raise IntegrityError(f"Unrecognized resolution decision '{code}'")


def apply_decision(
    invoice: ReconciledInvoice,
    decision: ResolutionDecision,
    *,
    seller_labels: Mapping[str, str] = DEFAULT_SELLER_LABELS,
) -> ReconciledInvoice:
    """Rewrite one divergent record according to ``decision``.

    Every outcome except IGNORE marks the record OK and clears an earlier
    IGNORE. When the chosen source has no seller the record keeps its current
    ``final_seller`` and, failing that, the unassigned placeholder, so an OK
    record always names a seller.
    Divergence kinds are left in place as an audit trail.
    """

    action = decision.action
    if action is DecisionAction.IGNORE:
        return replace(invoice, dropped=True, divergence_status=DivergenceStatus.OK)

    effective_date = invoice.effective_date
    if action is DecisionAction.ASSIGN_SELLER:
        if not decision.seller_code:
            raise IntegrityError("Seller assignment requires a seller code")
        chosen = seller_label(decision.seller_code, seller_labels)
    elif action is DecisionAction.USE_MOVEMENT:
        chosen = invoice.movement_seller
    elif action is DecisionAction.USE_CORRECTED:
        chosen = invoice.corrected_seller
    elif action is DecisionAction.USE_XML:
        chosen = invoice.xml_seller
    elif action is DecisionAction.USE_MOVEMENT_DATE:
        chosen = invoice.movement_seller or invoice.xml_seller
        effective_date = invoice.payment_date or effective_date
    elif action is DecisionAction.USE_XML_DATE:
        chosen = invoice.movement_seller or invoice.xml_seller
        effective_date = invoice.emission_date or effective_date
    else:
        raise IntegrityError(f"Unsupported decision action '{action}'")

    final_seller = chosen or invoice.final_seller or SellerPlaceholder.UNASSIGNED.value
    return replace(
        invoice,
        final_seller=final_seller,
        effective_date=effective_date,
        divergence_status=DivergenceStatus.OK,
        dropped=False,
    )


@dataclass(frozen=True)
class DivergenceResolutionWorkflow:
    """Immutable cursor over the divergence queue of a classified batch."""

    invoices: Tuple[ReconciledInvoice, ...]
    queue: Tuple[DivergenceQueueItem, ...]
    current_index: int = 0
    completed: bool = False

    @classmethod
    def start(
        cls,
        invoices: Sequence[ReconciledInvoice],
        queue: Optional[Sequence[DivergenceQueueItem]] = None,
    ) -> "DivergenceResolutionWorkflow":
        """Open a workflow; an empty queue yields an already completed one."""

        invoices = tuple(invoices)
        queue = tuple(queue) if queue is not None else build_divergence_queue(invoices)
        return cls(invoices=invoices, queue=queue, current_index=0, completed=not queue)

    @property
    def current(self) -> Optional[ReconciledInvoice]:
        if self.completed:
            return None
        return self.invoices[self.queue[self.current_index].invoice_index]

    @property
    def remaining(self) -> int:
        return 0 if self.completed else len(self.queue) - self.current_index

    def resolve(
        self,
        decision: ResolutionDecision,
        *,
        seller_labels: Mapping[str, str] = DEFAULT_SELLER_LABELS,
    ) -> "DivergenceResolutionWorkflow":
        """Apply ``decision`` to the current record and advance the cursor.

        Raises:
            ValidationError: If the workflow has already completed.
        """

        if self.completed:
            log.error("Resolution attempted on a completed workflow")
            raise ValidationError("Divergence workflow already completed")

        item = self.queue[self.current_index]
        original = self.invoices[item.invoice_index]
        updated = apply_decision(original, decision, seller_labels=seller_labels)
        invoices = list(self.invoices)
        invoices[item.invoice_index] = updated
        log.info(
            "Resolved divergence %d/%d for invoice '%s' with %s",
            item.position + 1,
            len(self.queue),
            original.invoice_key,
            decision.action.value,
        )

        # The cursor stays on the last item once the queue is exhausted.
        completed = self.current_index + 1 >= len(self.queue)
        return replace(
            self,
            invoices=tuple(invoices),
            current_index=self.current_index if completed else self.current_index + 1,
            completed=completed,
        )

    def go_back(self) -> "DivergenceResolutionWorkflow":
        """Step the cursor back one item without undoing the earlier decision.

        A completed workflow reopens on its last item.
        """

        if self.completed and self.queue:
            return replace(self, completed=False)
        if self.current_index == 0:
            return self
        return replace(self, current_index=self.current_index - 1, completed=False)

    def finalize(self) -> ResolutionOutcome:
        """Return the reconciled list with ignored records removed.

        Raises:
            ValidationError: If items remain in the queue.
        """

        if not self.completed:
            raise ValidationError(f"{self.remaining} divergences still awaiting a decision")
        kept = tuple(invoice for invoice in self.invoices if not invoice.dropped)
        return ResolutionOutcome(
            invoices=kept,
            resolved_count=len(self.queue),
            dropped_count=len(self.invoices) - len(kept),
        )


@dataclass(frozen=True)
class ResolutionStep:
    workflow: DivergenceResolutionWorkflow
    outcome: Optional[ResolutionOutcome] = None


def resolve_divergence(
    workflow: DivergenceResolutionWorkflow,
    decision: Union[ResolutionDecision, str],
    *,
    seller_labels: Mapping[str, str] = DEFAULT_SELLER_LABELS,
) -> ResolutionStep:
    """Advance ``workflow`` by one decision, finalizing when the queue ends.

    Args:
        workflow (DivergenceResolutionWorkflow): Current cursor.
        decision (ResolutionDecision | str): Parsed decision or raw code.
        seller_labels (Mapping[str, str]): Known register seller codes.

    Returns:
        ResolutionStep: The advanced workflow, plus the finalized outcome when
            the last queued item was just resolved.
    """

    if isinstance(decision, str):
        decision = parse_decision(decision, seller_labels=seller_labels)
    advanced = workflow.resolve(decision, seller_labels=seller_labels)
    if advanced.completed:
        return ResolutionStep(workflow=advanced, outcome=advanced.finalize())
    return ResolutionStep(workflow=advanced)


def record_decision(
    period: str,
    before: ReconciledInvoice,
    after: ReconciledInvoice,
    decision: ResolutionDecision,
    *,
    user: str,
    decided_at: datetime,
    note: str = "",
) -> DecisionRecord:
    """Build the audit row for ``decision``, which turned ``before`` into ``after``."""

    return DecisionRecord(
        decision_id=uuid.uuid4().hex,
        period=period,
        invoice_key=before.invoice_key,
        divergence_kinds=before.divergence_kinds,
        action=decision.action,
        decided_at=decided_at,
        user=user,
        seller_code=decision.seller_code,
        final_seller=None if after.dropped else after.final_seller,
        note=note,
    )


__all__ = [
    "ResolutionDecision",
    "ResolutionOutcome",
    "ResolutionStep",
    "DivergenceResolutionWorkflow",
    "parse_decision",
    "apply_decision",
    "resolve_divergence",
    "record_decision",
]
