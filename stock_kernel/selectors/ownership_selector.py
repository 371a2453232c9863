"""
Module: stock_kernel.selectors.ownership_selector
Responsibility: Standalone check of the single-owner invariant: an
    instance's owner field is set iff exactly one allocation row places it
    in a line of that same, still-active tag.
Architecture position: Kernel > Selectors.  Read-only; never repairs.

Invariants enforced:
    - Detects, never corrects.  Repairing the owner field would hide a
      double allocation.

Failure modes:
    - assert_consistent() raises ConsistencyViolationError on the first
      violation and logs every violation at CRITICAL.

Usage:
    OwnershipChecker(session).assert_consistent()
"""

from sqlalchemy import or_, select

from stock_kernel.domain.dtos import OwnershipViolation, TagStatus, ViolationKind
from stock_kernel.exceptions import ConsistencyViolationError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.instance import Instance
from stock_kernel.models.tag import Tag, TagLine, TagLineAllocation
from stock_kernel.selectors.base import BaseSelector

logger = get_logger("selectors.ownership")


class OwnershipChecker(BaseSelector):
    def find_violations(self) -> list[OwnershipViolation]:
        violations: list[OwnershipViolation] = []

        # Owned instances that no allocation row accounts for.
        orphaned = (
            select(Instance.id, Instance.tag_id)
            .outerjoin(TagLineAllocation, TagLineAllocation.instance_id == Instance.id)
            .where(Instance.tag_id.is_not(None), TagLineAllocation.id.is_(None))
            .order_by(Instance.id)
        )
        for instance_id, owner in self.session.execute(orphaned):
            violations.append(OwnershipViolation(
                kind=ViolationKind.OWNER_WITHOUT_ALLOCATION,
                instance_id=instance_id,
                owner_tag_id=owner,
                detail="instance has an owner but sits in no tag line",
            ))

        # Allocation rows whose instance is gone, unowned or owned elsewhere.
        mismatched = (
            select(TagLineAllocation.instance_id, Instance.tag_id, TagLine.tag_id)
            .join(TagLine, TagLineAllocation.line_id == TagLine.id)
            .outerjoin(Instance, Instance.id == TagLineAllocation.instance_id)
            .where(
                or_(
                    Instance.tag_id.is_(None),
                    Instance.tag_id != TagLine.tag_id,
                )
            )
            .order_by(TagLineAllocation.instance_id)
        )
        for instance_id, owner, line_tag in self.session.execute(mismatched):
            violations.append(OwnershipViolation(
                kind=ViolationKind.OWNER_MISMATCH,
                instance_id=instance_id,
                owner_tag_id=owner,
                line_tag_id=line_tag,
                detail="allocation row disagrees with instance owner",
            ))

        # Terminal tags must hold nothing.
        terminal = (
            select(TagLineAllocation.instance_id, Instance.tag_id, Tag.id, Tag.status)
            .join(TagLine, TagLineAllocation.line_id == TagLine.id)
            .join(Tag, TagLine.tag_id == Tag.id)
            .outerjoin(Instance, Instance.id == TagLineAllocation.instance_id)
            .where(Tag.status != TagStatus.ACTIVE.value)
            .order_by(TagLineAllocation.instance_id)
        )
        for instance_id, owner, tag_id, status in self.session.execute(terminal):
            violations.append(OwnershipViolation(
                kind=ViolationKind.TERMINAL_TAG_ALLOCATION,
                instance_id=instance_id,
                owner_tag_id=owner,
                line_tag_id=tag_id,
                detail=f"allocation row on {status} tag",
            ))

        return violations

    def assert_consistent(self) -> None:
        violations = self.find_violations()
        if not violations:
            return
        for v in violations:
            logger.critical("ownership_consistency_violation", extra={
                "kind": v.kind.value,
                "instance_id": str(v.instance_id),
                "owner_tag_id": str(v.owner_tag_id) if v.owner_tag_id else None,
                "line_tag_id": str(v.line_tag_id) if v.line_tag_id else None,
            })
        first = violations[0]
        raise ConsistencyViolationError(
            f"{len(violations)} ownership violation(s); first: {first.kind.value} "
            f"({first.detail})",
            instance_ids=[str(v.instance_id) for v in violations],
            tag_id=str(first.owner_tag_id or first.line_tag_id),
        )
