from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from subscription_engine.business.subscription.models import SubscriptionCredit, utcnow
from subscription_engine.business.subscription.repository import CreditRepository
from subscription_engine.business.subscription.schemas import CreditBalanceData, CreditRead
from subscription_engine.core.config import get_settings
from subscription_engine.platform.security.context import AuthContext

logger = logging.getLogger("subscription_engine.credits")


@dataclass(slots=True)
class CreditService:
    credit_repository: CreditRepository = CreditRepository()

    def issue(
        self,
        session: Session,
        *,
        user_id: str,
        amount: int,
        source_subscription_id: uuid.UUID | None,
        description: str,
        now: datetime,
    ) -> SubscriptionCredit:
        """Add a refund-as-credit entry; the caller owns the unit of work."""
        settings = get_settings()
        credit = SubscriptionCredit(
            user_id=user_id,
            amount=amount,
            remaining_amount=amount,
            currency=settings.ledger_currency,
            source_subscription_id=source_subscription_id,
            description=description,
            is_active=True,
            expires_at=now + timedelta(days=settings.credit_validity_days),
        )
        session.add(credit)
        session.flush()
        logger.info(
            "credit.issued",
            extra={"user_id": user_id, "subscription_id": str(source_subscription_id), "count": amount},
        )
        return credit

    def get_balance(self, session: Session, ctx: AuthContext, now: datetime | None = None) -> CreditBalanceData:
        credits = self.credit_repository.list_active(session, ctx, now or utcnow())
        return CreditBalanceData(
            balance=sum(credit.remaining_amount for credit in credits),
            currency=get_settings().ledger_currency,
            credits=[CreditRead.model_validate(credit) for credit in credits],
        )

    def deactivate_expired(self, session: Session, now: datetime, limit: int) -> int:
        expired = self.credit_repository.list_expired(session, now, limit)
        for credit in expired:
            credit.is_active = False
        return len(expired)


credit_service = CreditService()
