"""
Referential cleanup for deletes.

A delete is turned into an explicit, ordered ``DeletionPlan`` (dependents
first, root row last) and executed inside the caller's unit of work, so the
root row and everything hanging off it disappear in one commit. The schema
also declares ``ON DELETE CASCADE`` on every reference; the plan does not
rely on it, which keeps the ordering visible and testable on any engine.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from sqlalchemy import delete
from sqlalchemy.sql.dml import Delete
from sqlmodel import Session, select

from models import APKInfo, Customer, CustomerDevice, Device, Token

logger = logging.getLogger(__name__)


@dataclass
class DeletionPlan:
    """Ordered delete statements rooted at one row."""

    root: str
    steps: List[Tuple[str, Delete]] = field(default_factory=list)

    def add(self, label: str, stmt: Delete) -> "DeletionPlan":
        # rows are expired on commit; no in-session bookkeeping needed
        self.steps.append((label, stmt.execution_options(synchronize_session=False)))
        return self

    @property
    def labels(self) -> List[str]:
        return [label for label, _ in self.steps]


class CascadeCoordinator:
    """Builds and runs deletion plans for customers, devices and tokens."""

    def __init__(self, session: Session):
        self.session = session

    # ---- plans ----
    def plan_customer(self, customer: Customer) -> DeletionPlan:
        owned_tokens = select(Token.token_value).where(Token.customer_key == customer.customer_key)
        return (
            DeletionPlan(root=f"customer:{customer.customer_key}")
            .add("apkinfo", delete(APKInfo).where(APKInfo.token_value.in_(owned_tokens)))
            .add("token", delete(Token).where(Token.customer_key == customer.customer_key))
            .add("customerdevice", delete(CustomerDevice).where(CustomerDevice.customer_id == customer.id))
            .add("customer", delete(Customer).where(Customer.id == customer.id))
        )

    def plan_device(self, device: Device) -> DeletionPlan:
        return (
            DeletionPlan(root=f"device:{device.device_code}")
            .add("customerdevice", delete(CustomerDevice).where(CustomerDevice.device_id == device.id))
            .add("apkinfo", delete(APKInfo).where(APKInfo.device_code == device.device_code))
            .add("device", delete(Device).where(Device.id == device.id))
        )

    def plan_token(self, token: Token) -> DeletionPlan:
        # never touches the owning customer
        return (
            DeletionPlan(root=f"token:{token.id}")
            .add("apkinfo", delete(APKInfo).where(APKInfo.token_value == token.token_value))
            .add("token", delete(Token).where(Token.id == token.id))
        )

    # ---- execution ----
    def execute(self, plan: DeletionPlan) -> Dict[str, int]:
        """Run every step in order; the caller owns commit/rollback."""
        counts: Dict[str, int] = {}
        for label, stmt in plan.steps:
            res = self.session.exec(stmt)
            counts[label] = counts.get(label, 0) + (res.rowcount or 0)
        logger.info("cascade %s removed %s", plan.root, counts)
        return counts

    def delete_customer(self, customer: Customer) -> Dict[str, int]:
        return self.execute(self.plan_customer(customer))

    def delete_device(self, device: Device) -> Dict[str, int]:
        return self.execute(self.plan_device(device))

    def delete_token(self, token: Token) -> Dict[str, int]:
        return self.execute(self.plan_token(token))
