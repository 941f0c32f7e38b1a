import logging
from typing import List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.sql import func
from sqlmodel import Session, select

from cascade import CascadeCoordinator
from db import atomic
from errors import CustomerNotFound, DeviceNotFound, DuplicateCode, DuplicateKey, ValidationFailed
from models import Customer, CustomerDevice, Device, Token

logger = logging.getLogger(__name__)


def _required(value: Optional[str], field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationFailed(f"{field} must not be blank.", {"field": field})
    return value


def scalar_int(db: Session, stmt) -> int:
    res = db.exec(stmt).one_or_none()
    return int(res or 0)


class CustomerRegistry:
    """Customers and their immutable CustomerKey."""

    def __init__(self, session: Session):
        self.session = session

    def find_by_key(self, key: str) -> Optional[Customer]:
        return self.session.exec(select(Customer).where(Customer.customer_key == key)).first()

    def get_by_key(self, key: str) -> Customer:
        customer = self.find_by_key(key)
        if not customer:
            raise CustomerNotFound(f"Customer '{key}' not found.", {"customer_key": key})
        return customer

    def create(self, key: str, name: str, note: Optional[str] = None) -> Customer:
        key = _required(key, "key")
        name = _required(name, "name")
        if self.find_by_key(key):
            raise DuplicateKey(f"Customer key '{key}' already exists.", {"customer_key": key})

        customer = Customer(customer_key=key, customer_name=name, customer_note=note)
        try:
            with atomic(self.session):
                self.session.add(customer)
        except IntegrityError:
            # lost a race against a concurrent create with the same key
            raise DuplicateKey(f"Customer key '{key}' already exists.", {"customer_key": key})
        self.session.refresh(customer)
        logger.info("customer created key=%s id=%s", key, customer.id)
        return customer

    def update(self, key: str, name: Optional[str] = None, note: Optional[str] = None) -> Customer:
        customer = self.get_by_key(key)
        with atomic(self.session):
            if name is not None:
                customer.customer_name = _required(name, "name")
            if note is not None:
                customer.customer_note = note
            self.session.add(customer)
        self.session.refresh(customer)
        return customer

    def delete(self, customer_id: int) -> dict:
        customer = self.session.get(Customer, customer_id)
        if not customer:
            raise CustomerNotFound(f"Customer #{customer_id} not found.", {"customer_id": customer_id})
        key = customer.customer_key
        with atomic(self.session):
            counts = CascadeCoordinator(self.session).delete_customer(customer)
        logger.info("customer deleted key=%s", key)
        return counts

    def delete_by_key(self, key: str) -> dict:
        return self.delete(self.get_by_key(key).id)

    def list(self, q: Optional[str] = None, page: int = 1, page_size: int = 10) -> Tuple[List[dict], int]:
        """Page of customers with their device and token counts."""
        filters = []
        if q:
            like_query = f"%{q}%"
            filters.append(or_(Customer.customer_key.ilike(like_query),
                               Customer.customer_name.ilike(like_query),
                               Customer.customer_note.ilike(like_query)))
        total = scalar_int(self.session, select(func.count(Customer.id)).where(*filters))
        stmt = (select(Customer).where(*filters).order_by(Customer.created_at.desc(), Customer.id.desc())
                .offset((page - 1) * page_size).limit(page_size))
        customers = self.session.exec(stmt).all()

        device_counts, token_counts = {}, {}
        if customers:
            ids = [c.id for c in customers]
            keys = [c.customer_key for c in customers]
            device_counts = dict(self.session.exec(
                select(CustomerDevice.customer_id, func.count(CustomerDevice.device_id))
                .where(CustomerDevice.customer_id.in_(ids)).group_by(CustomerDevice.customer_id)).all())
            token_counts = dict(self.session.exec(
                select(Token.customer_key, func.count(Token.id))
                .where(Token.customer_key.in_(keys)).group_by(Token.customer_key)).all())

        items = [
            {"customer": c,
             "devices": device_counts.get(c.id, 0),
             "tokens": token_counts.get(c.customer_key, 0)}
            for c in customers
        ]
        return items, total


class DeviceRegistry:
    """Devices and their unique DeviceCode."""

    def __init__(self, session: Session):
        self.session = session

    def find_by_code(self, code: str) -> Optional[Device]:
        return self.session.exec(select(Device).where(Device.device_code == code)).first()

    def get_by_code(self, code: str) -> Device:
        device = self.find_by_code(code)
        if not device:
            raise DeviceNotFound(f"Device '{code}' not found.", {"device_code": code})
        return device

    def register(self, code: str, model: Optional[str] = None) -> Device:
        code = _required(code, "code")
        if self.find_by_code(code):
            raise DuplicateCode(f"Device code '{code}' already registered.", {"device_code": code})

        device = Device(device_code=code, device_model=model)
        try:
            with atomic(self.session):
                self.session.add(device)
        except IntegrityError:
            raise DuplicateCode(f"Device code '{code}' already registered.", {"device_code": code})
        self.session.refresh(device)
        logger.info("device registered code=%s id=%s", code, device.id)
        return device

    def update(self, code: str, model: Optional[str] = None) -> Device:
        device = self.get_by_code(code)
        with atomic(self.session):
            device.device_model = model
            self.session.add(device)
        self.session.refresh(device)
        return device

    def delete(self, device_id: int) -> dict:
        device = self.session.get(Device, device_id)
        if not device:
            raise DeviceNotFound(f"Device #{device_id} not found.", {"device_id": device_id})
        code = device.device_code
        with atomic(self.session):
            counts = CascadeCoordinator(self.session).delete_device(device)
        logger.info("device deleted code=%s", code)
        return counts

    def delete_by_code(self, code: str) -> dict:
        return self.delete(self.get_by_code(code).id)
