from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from medbom.exceptions import BOMEngineError


@dataclass(frozen=True)
class ChainMember:
    bom_id: str
    version: str
    status: str
    parent_bom_id: Optional[str] = None
    is_latest: bool = False


class VersionChain:
    """
    Ordered members of one configuration chain with a single latest pointer.

    The chain is a value: `promote` returns a new chain instead of editing
    this one, and the caller persists the difference.
    """

    def __init__(self, chain_id: str, members: Sequence[ChainMember]):
        latest = [m for m in members if m.is_latest]
        if len(latest) > 1:
            raise BOMEngineError(
                f"Chain {chain_id} has {len(latest)} latest members",
                code="CHAIN_INVARIANT_VIOLATED",
                details={"chain_id": chain_id, "latest": [m.bom_id for m in latest]},
                severity="CRITICAL",
            )
        self.chain_id = chain_id
        self.members: Tuple[ChainMember, ...] = tuple(members)

    def __len__(self) -> int:
        return len(self.members)

    @property
    def latest(self) -> Optional[ChainMember]:
        return next((m for m in self.members if m.is_latest), None)

    @property
    def tail(self) -> Optional[ChainMember]:
        return self.members[-1] if self.members else None

    def next_version(self) -> str:
        return f"{len(self.members) + 1}.0"

    def member(self, bom_id: str) -> ChainMember:
        for m in self.members:
            if m.bom_id == bom_id:
                return m
        raise KeyError(bom_id)

    def promote(self, bom_id: str) -> Tuple["VersionChain", Optional[ChainMember]]:
        """
        Move the latest pointer to `bom_id`.

        Returns:
            (new chain, previous latest member or None)
        """
        self.member(bom_id)
        previous = self.latest
        if previous is not None and previous.bom_id == bom_id:
            return self, None
        members = [
            ChainMember(m.bom_id, m.version, m.status, m.parent_bom_id, m.bom_id == bom_id)
            for m in self.members
        ]
        return VersionChain(self.chain_id, members), previous
