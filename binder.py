import logging
from typing import List

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from db import atomic
from errors import AlreadyBound, CustomerNotFound, DeviceNotFound, NotBound
from models import Customer, CustomerDevice, Device

logger = logging.getLogger(__name__)


class CustomerDeviceBinder:
    """Many-to-many bookkeeping between customers and devices.

    A device may be bound to several customers at once; each live binding is
    enough for that customer's tokens to unlock packages on the device.
    Binding an existing pair is an error, not a no-op.
    """

    def __init__(self, session: Session):
        self.session = session

    def _pair(self, customer_id: int, device_id: int):
        return self.session.get(CustomerDevice, (customer_id, device_id))

    def is_bound(self, customer_id: int, device_id: int) -> bool:
        stmt = select(CustomerDevice).where(
            CustomerDevice.customer_id == customer_id,
            CustomerDevice.device_id == device_id,
        )
        return self.session.exec(stmt).first() is not None

    def bind(self, customer_id: int, device_id: int) -> CustomerDevice:
        details = {"customer_id": customer_id, "device_id": device_id}
        if self.is_bound(customer_id, device_id):
            raise AlreadyBound("Device is already bound to this customer.", details)
        link = CustomerDevice(customer_id=customer_id, device_id=device_id)
        try:
            with atomic(self.session):
                self.session.add(link)
        except IntegrityError:
            if self.is_bound(customer_id, device_id):
                # composite PK taken by a concurrent bind
                raise AlreadyBound("Device is already bound to this customer.", details)
            if self.session.get(Customer, customer_id) is None:
                raise CustomerNotFound("Customer not found.", details)
            if self.session.get(Device, device_id) is None:
                raise DeviceNotFound("Device not found.", details)
            raise
        logger.info("bound customer=%s device=%s", customer_id, device_id)
        return link

    def unbind(self, customer_id: int, device_id: int) -> None:
        link = self._pair(customer_id, device_id)
        if not link:
            raise NotBound("Device is not bound to this customer.",
                           {"customer_id": customer_id, "device_id": device_id})
        with atomic(self.session):
            self.session.delete(link)
        logger.info("unbound customer=%s device=%s", customer_id, device_id)

    def devices_of(self, customer_id: int) -> List[Device]:
        stmt = (select(Device)
                .join(CustomerDevice, CustomerDevice.device_id == Device.id)
                .where(CustomerDevice.customer_id == customer_id)
                .order_by(Device.device_code))
        return list(self.session.exec(stmt).all())

    def customers_of(self, device_id: int) -> List[Customer]:
        stmt = (select(Customer)
                .join(CustomerDevice, CustomerDevice.customer_id == Customer.id)
                .where(CustomerDevice.device_id == device_id)
                .order_by(Customer.customer_key))
        return list(self.session.exec(stmt).all())
