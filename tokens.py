import logging
import datetime as dt
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from cascade import CascadeCoordinator
from config import TOKEN_GENERATION_ATTEMPTS
from db import atomic
from errors import (
    CustomerNotFound, DuplicateTokenValue, TokenGenerationExhausted, TokenNotFound, ValidationFailed,
)
from models import Customer, Token, as_utc, utc_now
from security import generate_token_value, redact

logger = logging.getLogger(__name__)


def is_valid(token: Optional[Token], now: Optional[dt.datetime] = None) -> bool:
    """True iff the token exists and has not passed its expiry at ``now``.

    Expiry is inclusive: a token is still valid at exactly ``token_expiry``.
    Nothing is cached; every call re-evaluates against the clock.
    """
    if token is None:
        return False
    if token.token_expiry is None:
        return True
    now = as_utc(now) if now is not None else utc_now()
    return now <= as_utc(token.token_expiry)


class TokenIssuer:
    def __init__(self, session: Session,
                 generate: Callable[[], str] = generate_token_value,
                 max_attempts: int = TOKEN_GENERATION_ATTEMPTS):
        self.session = session
        self.generate = generate
        self.max_attempts = max_attempts

    def find(self, token_value: str) -> Optional[Token]:
        return self.session.exec(select(Token).where(Token.token_value == token_value)).first()

    def tokens_of(self, customer_key: str) -> List[Token]:
        stmt = select(Token).where(Token.customer_key == customer_key).order_by(Token.token_init_date, Token.id)
        return list(self.session.exec(stmt).all())

    def _customer_exists(self, customer_key: str) -> bool:
        stmt = select(Customer.id).where(Customer.customer_key == customer_key)
        return self.session.exec(stmt).first() is not None

    def issue(self, customer_key: str,
              ttl: Optional[dt.timedelta] = None,
              expiry: Optional[dt.datetime] = None,
              now: Optional[dt.datetime] = None) -> Token:
        """Mint a token for ``customer_key``.

        ``ttl`` and ``expiry`` are mutually exclusive; neither means the token
        never expires. Value collisions are retried internally up to
        ``max_attempts`` times before TokenGenerationExhausted.
        """
        if ttl is not None and expiry is not None:
            raise ValidationFailed("Give either ttl or expiry, not both.")
        if not self._customer_exists(customer_key):
            raise CustomerNotFound(f"Customer '{customer_key}' not found.", {"customer_key": customer_key})

        init = as_utc(now) if now is not None else utc_now()
        if ttl is not None:
            if ttl < dt.timedelta(0):
                raise ValidationFailed("ttl must not be negative.")
            expiry = init + ttl
        elif expiry is not None:
            expiry = as_utc(expiry)
            if expiry < init:
                raise ValidationFailed("Token expiry must not precede its issue time.")

        for attempt in range(1, self.max_attempts + 1):
            try:
                token = self._insert(customer_key, init, expiry)
            except DuplicateTokenValue:
                logger.warning("token value collision for customer=%s (attempt %d/%d)",
                               customer_key, attempt, self.max_attempts)
                continue
            logger.info("token issued customer=%s token=%s expiry=%s",
                        customer_key, redact(token.token_value), token.token_expiry)
            return token

        raise TokenGenerationExhausted("Could not generate a unique token value.",
                                       {"attempts": self.max_attempts})

    def _insert(self, customer_key: str, init: dt.datetime, expiry: Optional[dt.datetime]) -> Token:
        token = Token(token_value=self.generate(), customer_key=customer_key,
                      token_init_date=init, token_expiry=expiry)
        try:
            with atomic(self.session):
                self.session.add(token)
        except IntegrityError:
            if not self._customer_exists(customer_key):
                # customer deleted between the check and the insert
                raise CustomerNotFound(f"Customer '{customer_key}' not found.",
                                       {"customer_key": customer_key})
            raise DuplicateTokenValue("Token value already taken.")
        self.session.refresh(token)
        return token

    def revoke(self, token_value: str) -> dict:
        """Delete the token and every entitlement minted with it."""
        token = self.find(token_value)
        if not token:
            raise TokenNotFound("Token not found.")
        customer_key = token.customer_key
        with atomic(self.session):
            counts = CascadeCoordinator(self.session).delete_token(token)
        logger.info("token revoked customer=%s token=%s", customer_key, redact(token_value))
        return counts

    def is_valid(self, token: Optional[Token], now: Optional[dt.datetime] = None) -> bool:
        return is_valid(token, now)
