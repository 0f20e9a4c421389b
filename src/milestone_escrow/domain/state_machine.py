"""Agreement, Milestone and Transaction State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the API or a service does, an illegal transition
(e.g., draft -> completed) will raise TransitionNotAllowed.

The machines are instantiated per-record and validate transitions before
the ORM model's status field is updated.

Agreement transition table:
    draft                    -> pending_developer        (submit_to_developer)
    pending_developer        -> pending_client           (developer_accept)
    pending_developer        -> cancelled                (developer_decline)
    pending_client           -> pending_signatures       (collect_signature)
    pending_signatures       -> escrow_deposit           (signatures_complete)
    pending_client           -> active                   (fund_escrow)
    escrow_deposit           -> active                   (fund_escrow)
    active                   -> in_progress              (start_work)
    in_progress              -> awaiting_final_approval  (request_final_approval)
    active / in_progress /
    awaiting_final_approval  -> completed                (complete)
    active / in_progress /
    awaiting_final_approval  -> disputed                 (raise_dispute)
    disputed                 -> in_progress              (resolve_dispute)
    any non-terminal         -> cancelled                (cancel)

Milestone transition table:
    pending                         -> in_progress         (start)
    in_progress / revision_requested -> completed          (mark_complete)
    in_progress / revision_requested /
    completed                       -> submitted           (submit)
    submitted                       -> in_review           (begin_review)
    submitted / in_review           -> approved            (approve)
    submitted / in_review           -> revision_requested  (request_revision)
    submitted / in_review           -> rejected            (reject)
    approved                        -> paid                (mark_paid)

Transaction transition table:
    pending               -> processing   (process)
    pending / processing  -> completed    (mark_completed)
    pending / processing  -> failed       (mark_failed)
    pending / processing  -> cancelled    (cancel)
    pending / processing  -> refunded     (refund)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class _StatusGuardMixin:
    """Shared construction and introspection for the status guards."""

    def __init__(self, current_status: str) -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current status value (e.g., "active").
                           Must match one of the State value strings exactly.
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        # start_value expects the string value, not the State object
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enum)."""
        return str(self.current_state.value)

    @property
    def is_terminal(self) -> bool:
        return bool(self.current_state.final)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.name for event in self.allowed_events]


class AgreementStateMachine(_StatusGuardMixin, StateMachine):
    """State machine that guards the agreement lifecycle.

    Usage:
        sm = AgreementStateMachine(current_status="pending_client")
        sm.fund_escrow()  # transitions to active
    """

    # --- States ---
    DRAFT = State("Draft", value="draft", initial=True)
    PENDING_DEVELOPER = State("Pending developer", value="pending_developer")
    PENDING_CLIENT = State("Pending client", value="pending_client")
    PENDING_SIGNATURES = State("Pending signatures", value="pending_signatures")
    ESCROW_DEPOSIT = State("Escrow deposit", value="escrow_deposit")
    ACTIVE = State("Active", value="active")
    IN_PROGRESS = State("In progress", value="in_progress")
    AWAITING_FINAL_APPROVAL = State("Awaiting final approval", value="awaiting_final_approval")
    DISPUTED = State("Disputed", value="disputed")
    COMPLETED = State("Completed", value="completed", final=True)
    CANCELLED = State("Cancelled", value="cancelled", final=True)

    # --- Events / Transitions ---

    # Negotiation
    submit_to_developer = DRAFT.to(PENDING_DEVELOPER)
    developer_accept = PENDING_DEVELOPER.to(PENDING_CLIENT)
    developer_decline = PENDING_DEVELOPER.to(CANCELLED)

    # Signatures
    collect_signature = PENDING_CLIENT.to(PENDING_SIGNATURES)
    signatures_complete = PENDING_SIGNATURES.to(ESCROW_DEPOSIT)

    # Funding
    fund_escrow = PENDING_CLIENT.to(ACTIVE) | ESCROW_DEPOSIT.to(ACTIVE)

    # Execution
    start_work = ACTIVE.to(IN_PROGRESS)
    request_final_approval = IN_PROGRESS.to(AWAITING_FINAL_APPROVAL)
    complete = (
        ACTIVE.to(COMPLETED)
        | IN_PROGRESS.to(COMPLETED)
        | AWAITING_FINAL_APPROVAL.to(COMPLETED)
    )

    # Disputes
    raise_dispute = (
        ACTIVE.to(DISPUTED)
        | IN_PROGRESS.to(DISPUTED)
        | AWAITING_FINAL_APPROVAL.to(DISPUTED)
    )
    resolve_dispute = DISPUTED.to(IN_PROGRESS)

    # Cancellation
    cancel = (
        DRAFT.to(CANCELLED)
        | PENDING_DEVELOPER.to(CANCELLED)
        | PENDING_CLIENT.to(CANCELLED)
        | PENDING_SIGNATURES.to(CANCELLED)
        | ESCROW_DEPOSIT.to(CANCELLED)
        | ACTIVE.to(CANCELLED)
        | IN_PROGRESS.to(CANCELLED)
        | AWAITING_FINAL_APPROVAL.to(CANCELLED)
        | DISPUTED.to(CANCELLED)
    )

    def __init__(self, current_status: str = "draft") -> None:
        super().__init__(current_status=current_status)


class MilestoneStateMachine(_StatusGuardMixin, StateMachine):
    """State machine that guards a single milestone's workflow."""

    # --- States ---
    PENDING = State("Pending", value="pending", initial=True)
    IN_PROGRESS = State("In progress", value="in_progress")
    SUBMITTED = State("Submitted", value="submitted")
    IN_REVIEW = State("In review", value="in_review")
    REVISION_REQUESTED = State("Revision requested", value="revision_requested")
    COMPLETED = State("Completed", value="completed")
    APPROVED = State("Approved", value="approved")
    PAID = State("Paid", value="paid", final=True)
    REJECTED = State("Rejected", value="rejected", final=True)

    # --- Events / Transitions ---

    # Developer side
    start = PENDING.to(IN_PROGRESS)
    mark_complete = IN_PROGRESS.to(COMPLETED) | REVISION_REQUESTED.to(COMPLETED)
    submit = (
        IN_PROGRESS.to(SUBMITTED)
        | REVISION_REQUESTED.to(SUBMITTED)
        | COMPLETED.to(SUBMITTED)
    )

    # Client side
    begin_review = SUBMITTED.to(IN_REVIEW)
    approve = SUBMITTED.to(APPROVED) | IN_REVIEW.to(APPROVED)
    request_revision = SUBMITTED.to(REVISION_REQUESTED) | IN_REVIEW.to(REVISION_REQUESTED)
    reject = SUBMITTED.to(REJECTED) | IN_REVIEW.to(REJECTED)

    # Settlement
    mark_paid = APPROVED.to(PAID)

    def __init__(self, current_status: str = "pending") -> None:
        super().__init__(current_status=current_status)


class TransactionStateMachine(_StatusGuardMixin, StateMachine):
    """Forward-only guard for ledger transactions."""

    PENDING = State("Pending", value="pending", initial=True)
    PROCESSING = State("Processing", value="processing")
    COMPLETED = State("Completed", value="completed", final=True)
    FAILED = State("Failed", value="failed", final=True)
    CANCELLED = State("Cancelled", value="cancelled", final=True)
    REFUNDED = State("Refunded", value="refunded", final=True)

    process = PENDING.to(PROCESSING)
    mark_completed = PENDING.to(COMPLETED) | PROCESSING.to(COMPLETED)
    mark_failed = PENDING.to(FAILED) | PROCESSING.to(FAILED)
    cancel = PENDING.to(CANCELLED) | PROCESSING.to(CANCELLED)
    refund = PENDING.to(REFUNDED) | PROCESSING.to(REFUNDED)

    def __init__(self, current_status: str = "pending") -> None:
        super().__init__(current_status=current_status)


# Target status -> event, used when a caller asks for a status rather than an event.
TRANSACTION_EVENT_FOR_STATUS: dict[str, str] = {
    "processing": "process",
    "completed": "mark_completed",
    "failed": "mark_failed",
    "cancelled": "cancel",
    "refunded": "refund",
}


def validate_transition(
    machine_cls: type[_StatusGuardMixin],
    current_status: str,
    event_name: str,
) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns
    the resulting status string.

    Args:
        machine_cls: One of the guard classes in this module.
        current_status: Current status value.
        event_name: The event to fire (e.g., "fund_escrow").

    Returns:
        The new status string after the transition.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = machine_cls(current_status=current_status)

    # Events are the callables a guard class adds on top of the library base
    is_event = (
        not event_name.startswith("_")
        and not hasattr(StateMachine, event_name)
        and not hasattr(_StatusGuardMixin, event_name)
        and callable(getattr(sm, event_name, None))
    )
    if not is_event:
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    getattr(sm, event_name)()
    return sm.status
