"""
Access decisions for (device, token, package) requests.

``EntitlementResolver.resolve`` walks a fixed sequence of checks, each one
short-circuiting with a specific error, and finishes by looking up or
creating the APKInfo row that materializes the grant:

1. device exists                     -> UnknownDevice
2. token exists                      -> UnknownToken
3. token not past its expiry         -> TokenExpired
4. token's customer still exists     -> OrphanToken (invariant violation)
5. device bound to that customer     -> DeviceNotEntitled
6. insert-if-absent the APKInfo row; on a unique conflict the winner's row
   is returned, so concurrent identical requests converge on one row.

Storage contention is retried a bounded number of times, then surfaces as
TransientError.
"""

import logging
import re
import time
import datetime as dt
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

from binder import CustomerDeviceBinder
from config import APK_STORAGE_ROOT, RESOLVE_ATTEMPTS, RESOLVE_BACKOFF_SECONDS
from db import atomic
from errors import (
    DeviceNotEntitled, OrphanToken, TokenExpired, TransientError,
    UnknownDevice, UnknownToken, ValidationFailed,
)
from models import APKInfo, Customer, Device, Token, as_utc, utc_now
from security import redact
from tokens import is_valid

logger = logging.getLogger(__name__)

APK_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
APK_VERSION_RE = re.compile(r"^\d+(\.\d+){0,3}([-+][0-9A-Za-z.-]+)?$")


@dataclass(frozen=True)
class PackageRequest:
    name: str
    version: str

    def __post_init__(self):
        if not APK_NAME_RE.match(self.name or ""):
            raise ValidationFailed("Invalid package name.", {"package": self.name})
        if not APK_VERSION_RE.match(self.version or "") or len(self.version) > 64:
            raise ValidationFailed("Invalid package version.", {"version": self.version})

    def apk_path(self, root: str = APK_STORAGE_ROOT) -> str:
        return f"{root}/{self.name}/{self.version}/{self.name}-{self.version}.apk"


@dataclass
class Resolution:
    apk: APKInfo
    token_expiry: Optional[dt.datetime]
    created: bool


class _LostRace(Exception):
    """Insert conflicted but no winning row is visible (a parent vanished)."""


class EntitlementResolver:
    def __init__(self, session: Session,
                 storage_root: str = APK_STORAGE_ROOT,
                 max_attempts: int = RESOLVE_ATTEMPTS,
                 backoff: float = RESOLVE_BACKOFF_SECONDS):
        self.session = session
        self.storage_root = storage_root
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.binder = CustomerDeviceBinder(session)

    def resolve(self, device_code: str, token_value: str, package: PackageRequest,
                now: Optional[dt.datetime] = None) -> APKInfo:
        return self.resolve_entitlement(device_code, token_value, package, now).apk

    def resolve_entitlement(self, device_code: str, token_value: str, package: PackageRequest,
                            now: Optional[dt.datetime] = None) -> Resolution:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._resolve_once(device_code, token_value, package, now)
            except (UnknownDevice, UnknownToken, TokenExpired, DeviceNotEntitled) as e:
                logger.info("resolve denied device=%s token=%s reason=%s",
                            device_code, redact(token_value), e.code)
                raise
            except (TransientError, _LostRace) as e:
                last_error = e
            except OperationalError as e:
                self.session.rollback()
                last_error = e
            logger.warning("resolve contention device=%s token=%s (attempt %d/%d): %s",
                           device_code, redact(token_value), attempt, self.max_attempts, last_error)
            if attempt < self.max_attempts:
                time.sleep(self.backoff * attempt)
        raise TransientError("Entitlement store busy, retry later.",
                             {"attempts": self.max_attempts})

    # ---- steps ----
    def _check(self, device_code: str, token_value: str,
               now: Optional[dt.datetime]) -> Tuple[Device, Token]:
        device = self.session.exec(select(Device).where(Device.device_code == device_code)).first()
        if not device:
            raise UnknownDevice("Device is not registered.", {"device_code": device_code})

        token = self.session.exec(select(Token).where(Token.token_value == token_value)).first()
        if not token:
            raise UnknownToken("Token is not recognised.")

        if not is_valid(token, now if now is not None else utc_now()):
            raise TokenExpired("Token has expired.",
                               {"expired_at": as_utc(token.token_expiry).isoformat()})

        customer = self.session.exec(
            select(Customer).where(Customer.customer_key == token.customer_key)).first()
        if not customer:
            logger.critical("orphan token: token=%s references missing customer=%s",
                            redact(token_value), token.customer_key)
            raise OrphanToken("Token references a customer that no longer exists.",
                              {"customer_key": token.customer_key})

        if not self.binder.is_bound(customer.id, device.id):
            raise DeviceNotEntitled("Device is not registered to the token's customer.",
                                    {"device_code": device_code})
        return device, token

    def _find(self, device_code: str, token_value: str, package: PackageRequest) -> Optional[APKInfo]:
        stmt = select(APKInfo).where(
            APKInfo.device_code == device_code,
            APKInfo.token_value == token_value,
            APKInfo.apk_name == package.name,
            APKInfo.apk_ver_number == package.version,
        )
        return self.session.exec(stmt).first()

    def _resolve_once(self, device_code: str, token_value: str, package: PackageRequest,
                      now: Optional[dt.datetime]) -> Resolution:
        try:
            device, token = self._check(device_code, token_value, now)
        except OperationalError as e:
            self.session.rollback()
            raise TransientError("Entitlement store busy.") from e
        token_expiry = token.token_expiry

        existing = self._find(device_code, token_value, package)
        if existing:
            return Resolution(existing, token_expiry, created=False)

        apk = APKInfo(
            apk_name=package.name,
            apk_path=package.apk_path(self.storage_root),
            apk_ver_number=package.version,
            device_code=device.device_code,
            token_value=token.token_value,
        )
        try:
            with atomic(self.session):
                self.session.add(apk)
        except IntegrityError:
            # a concurrent resolver inserted the same grant first
            winner = self._find(device_code, token_value, package)
            if winner is None:
                raise _LostRace()
            return Resolution(winner, token_expiry, created=False)

        self.session.refresh(apk)
        logger.info("entitlement created device=%s token=%s package=%s@%s",
                    device_code, redact(token_value), package.name, package.version)
        return Resolution(apk, token_expiry, created=True)
