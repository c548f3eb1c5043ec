"""
BOM Version Manager
Lifecycle state machine and version-chain management for generated BOMs.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from medbom.bom_engine.events.domain_events import BOMStateChangedEvent
from medbom.bom_engine.events.event_bus import EventBus
from medbom.bom_engine.events.transactional import enqueue_event
from medbom.bom_engine.models.bom import BOM, BOMStatus
from medbom.bom_engine.services.bom_store import BOMStore, version_key
from medbom.bom_engine.version.chain import ChainMember, VersionChain
from medbom.exceptions import StateTransitionError, ValidationError

logger = logging.getLogger(__name__)

S = BOMStatus

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    S.DRAFT.value: frozenset({S.CALCULATING.value}),
    S.CALCULATING.value: frozenset({S.PENDING_REVIEW.value}),
    S.PENDING_REVIEW.value: frozenset({S.PENDING_APPROVAL.value, S.REJECTED.value}),
    S.PENDING_APPROVAL.value: frozenset({S.APPROVED.value, S.REJECTED.value}),
    S.APPROVED.value: frozenset({S.ACTIVE.value, S.SUPERSEDED.value}),
    S.ACTIVE.value: frozenset({S.SUPERSEDED.value}),
    S.REJECTED.value: frozenset(),
    S.SUPERSEDED.value: frozenset(),
}


class BOMVersionManager:
    def __init__(self, session: Session, event_bus: Optional[EventBus] = None):
        self.session = session
        self.store = BOMStore(session)
        self.event_bus = event_bus

    # --- Chain API ---
    def chain(self, chain_id: str) -> VersionChain:
        return VersionChain(
            chain_id,
            [
                ChainMember(b.id, b.version, b.status, b.parent_bom_id, bool(b.is_latest))
                for b in self.store.list_chain(chain_id)
            ],
        )

    def next_version(self, chain_id: str) -> Tuple[str, Optional[str], bool]:
        """
        Version label, parent BOM id and initial latest flag for the next chain member.

        The first member of a chain is latest from creation; later members take
        the pointer when they are approved.
        """
        chain = self.chain(chain_id)
        tail = chain.tail
        return chain.next_version(), tail.bom_id if tail else None, tail is None

    # --- State machine ---
    def transition(self, bom_id: str, to_state: str, actor_id: Optional[str] = None) -> BOM:
        bom = self.store.get_bom(bom_id)
        self._move(bom, to_state, actor_id)
        return bom

    def _move(self, bom: BOM, to_state: str, actor_id: Optional[str]) -> None:
        from_state = bom.status
        if to_state not in TRANSITIONS.get(from_state, frozenset()):
            raise StateTransitionError(from_state, to_state, resource=f"BOM {bom.bom_number}")
        bom.status = to_state
        self.session.flush()
        logger.info(f"BOM {bom.bom_number} v{bom.version}: {from_state} -> {to_state}")
        enqueue_event(
            self.session,
            BOMStateChangedEvent(
                bom_id=bom.id,
                old_state=from_state,
                new_state=to_state,
                version=bom.version,
                actor_id=actor_id,
            ),
            self.event_bus,
        )

    def start_calculation(self, bom_id: str) -> BOM:
        return self.transition(bom_id, S.CALCULATING.value)

    def complete_calculation(self, bom_id: str, fatal_errors: Sequence[dict] = ()) -> BOM:
        """CALCULATING -> PENDING_REVIEW; refused while any fatal expander error exists."""
        bom = self.store.get_bom(bom_id)
        if fatal_errors:
            raise ValidationError(
                f"BOM {bom.bom_number} has {len(fatal_errors)} fatal expansion error(s)",
                errors=list(fatal_errors),
                bom_id=bom_id,
            )
        self._move(bom, S.PENDING_REVIEW.value, None)
        return bom

    def review(
        self,
        bom_id: str,
        reviewer_identity: str,
        notes: Optional[str] = None,
        accept: bool = True,
    ) -> BOM:
        bom = self.store.get_bom(bom_id)
        self._require_identity(reviewer_identity, "review")
        target = S.PENDING_APPROVAL.value if accept else S.REJECTED.value
        if bom.status != S.PENDING_REVIEW.value:
            raise StateTransitionError(bom.status, target, resource=f"BOM {bom.bom_number}")
        bom.reviewed_by = reviewer_identity
        bom.reviewed_at = datetime.utcnow()
        bom.review_notes = notes
        if not accept:
            bom.rejected_by = reviewer_identity
            bom.rejected_at = bom.reviewed_at
            bom.rejection_reason = notes
        self._move(bom, target, reviewer_identity)
        return bom

    # --- Approval collaborator ---
    def approve(self, bom_id: str, approver_identity: str, notes: Optional[str] = None) -> BOM:
        """
        PENDING_APPROVAL -> APPROVED, then move the chain's latest pointer here.
        The prior latest member is superseded when it was approved or active.

        Raises:
            StateTransitionError: not pending approval, or a newer version of the
                chain is already approved or active.
        """
        self._require_identity(approver_identity, "approve")
        bom = self.store.get_bom(bom_id)
        if bom.status != S.PENDING_APPROVAL.value:
            raise StateTransitionError(bom.status, S.APPROVED.value, resource=f"BOM {bom.bom_number}")

        latest = self.chain(bom.chain_id).latest
        if (
            latest is not None
            and latest.status in (S.APPROVED.value, S.ACTIVE.value)
            and version_key(latest.version) > version_key(bom.version)
        ):
            raise StateTransitionError(
                bom.status,
                S.APPROVED.value,
                resource=f"BOM {bom.bom_number}",
                reason="newer_version_approved",
                latest_version=latest.version,
            )

        bom.approved_by = approver_identity
        bom.approved_at = datetime.utcnow()
        bom.approval_notes = notes
        self._move(bom, S.APPROVED.value, approver_identity)

        chain, previous = self.chain(bom.chain_id).promote(bom.id)
        if previous is not None:
            prior = self.store.get_bom(previous.bom_id)
            prior.is_latest = False
            if TRANSITIONS.get(prior.status, frozenset()) & {S.SUPERSEDED.value}:
                self._move(prior, S.SUPERSEDED.value, approver_identity)
        bom.is_latest = True
        self.session.flush()
        # Re-read to confirm the single-latest invariant after the update.
        self.chain(bom.chain_id)
        return bom

    def reject(self, bom_id: str, approver_identity: str, reason: str) -> BOM:
        self._require_identity(approver_identity, "reject")
        bom = self.store.get_bom(bom_id)
        if bom.status not in (S.PENDING_REVIEW.value, S.PENDING_APPROVAL.value):
            raise StateTransitionError(bom.status, S.REJECTED.value, resource=f"BOM {bom.bom_number}")
        bom.rejected_by = approver_identity
        bom.rejected_at = datetime.utcnow()
        bom.rejection_reason = reason
        self._move(bom, S.REJECTED.value, approver_identity)
        return bom

    def activate(self, bom_id: str, actor_id: Optional[str] = None) -> BOM:
        return self.transition(bom_id, S.ACTIVE.value, actor_id)

    @staticmethod
    def _require_identity(identity: Optional[str], action: str) -> None:
        if not identity or not str(identity).strip():
            raise ValidationError(
                f"An approver identity is required to {action} a BOM",
                errors=[{"field": "approver_identity", "message": "required"}],
            )
