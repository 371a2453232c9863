"""
LoanService -- tool checkout and check-in.

Responsibility:
    Thin policy layer over TagLifecycleManager: only tool-category catalog
    entries may be loaned, and returns are releases (or condition moves),
    never consumption.

Failure modes:
    - CatalogCategoryMismatchError when a checkout line is not a tool.
    - Everything TagLifecycleManager.create / return_loan raise.
"""

from datetime import datetime
from typing import Mapping, Sequence
from uuid import UUID

from stock_kernel.catalog import CatalogProvider
from stock_kernel.domain.attributes import ProductCategory
from stock_kernel.domain.dtos import (
    LineRequest,
    LoanReturnResult,
    ReturnCondition,
    TagRecord,
    TagType,
)
from stock_kernel.exceptions import CatalogCategoryMismatchError
from stock_kernel.logging_config import get_logger
from stock_kernel.services.base import BaseService
from stock_kernel.services.tag_lifecycle import TagLifecycleManager

logger = get_logger("services.loan")


class LoanService(BaseService):
    def __init__(
        self,
        session,
        catalog: CatalogProvider,
        lifecycle: TagLifecycleManager | None = None,
        clock=None,
    ):
        super().__init__(session, clock)
        self.catalog = catalog
        self.lifecycle = lifecycle or TagLifecycleManager(
            session, catalog, clock=self.clock
        )

    @classmethod
    def from_settings(
        cls, session, catalog: CatalogProvider, settings, clock=None
    ) -> "LoanService":
        lifecycle = TagLifecycleManager.from_settings(
            session, catalog, settings, clock=clock
        )
        return cls(session, catalog, lifecycle=lifecycle, clock=clock)

    def checkout(
        self,
        lines: Sequence[LineRequest],
        actor: str,
        customer_name: str | None = None,
        project_name: str | None = None,
        notes: str | None = None,
        due_date: datetime | None = None,
    ) -> TagRecord:
        """Loan tools out on a new ``loaned`` tag."""
        for line in lines:
            entry = self.catalog.get_catalog_entry(line.catalog_entry_id)
            if not entry.is_tool:
                logger.warning("checkout_rejected_not_tool", extra={
                    "catalog_entry_id": line.catalog_entry_id,
                    "category": entry.category.value,
                })
                raise CatalogCategoryMismatchError(
                    line.catalog_entry_id,
                    ProductCategory.TOOL.value,
                    entry.category.value,
                )
        tag = self.lifecycle.create(
            TagType.LOANED,
            lines,
            actor,
            customer_name=customer_name,
            project_name=project_name,
            notes=notes,
            due_date=due_date,
        )
        logger.info("tools_checked_out", extra={
            "loan_tag_id": str(tag.id),
            "quantity": tag.total_quantity,
            "customer_name": customer_name,
        })
        return tag

    def return_tools(
        self,
        tag_id: UUID,
        actor: str,
        returns: Mapping[str, Sequence[UUID]] | None = None,
        condition: ReturnCondition = ReturnCondition.FUNCTIONAL,
        notes: str | None = None,
    ) -> LoanReturnResult:
        """Check tools back in; None returns everything still out."""
        return self.lifecycle.return_loan(
            tag_id, actor, returns=returns, condition=condition, notes=notes
        )
