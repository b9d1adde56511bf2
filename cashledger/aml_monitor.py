"""AML screening of transactions before they enter the ledger."""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from aml import Rule, RuleEngine, default_aml_rules

from .clock import Clock, business_date, utcnow
from .config import Settings, get_settings
from .models import AmlAlert, AmlScreening, Organization, RiskRating, TransactionStatus, truncate_amount
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

RISK_MULTIPLIERS = {
    RiskRating.LOW: Decimal("0.75"),
    RiskRating.MEDIUM: Decimal("1"),
    RiskRating.HIGH: Decimal("1.5"),
}
ALL_CATEGORIES = ["velocity", "threshold", "pattern"]


class AmlMonitor:
    def __init__(
        self,
        storage: InMemoryStorage,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        engine: Optional[RuleEngine] = None,
    ):
        self.storage = storage
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.engine = engine or RuleEngine(self._configured_rules())

    def _configured_rules(self) -> list[Rule]:
        aml = self.settings.aml
        if aml.rules:
            return [Rule.from_dict(r) for r in aml.rules]
        return default_aml_rules(aml.reporting_threshold, aml.structuring_band)

    def check_transaction_for_aml_violations(
        self, user_id: str, amount, transaction_type: str = "transfer"
    ) -> AmlScreening:
        amount = truncate_amount(amount)
        organization = self._organization_for(user_id)
        rating = organization.aml_risk_rating if organization else RiskRating.MEDIUM
        categories = organization.enabled_aml_checks if organization else ALL_CATEGORIES

        context = self._build_context(user_id, amount, transaction_type, rating)
        multiplier = RISK_MULTIPLIERS[rating]
        alerts = []
        for rule in self.engine.evaluate(context, categories):
            score = int(min(Decimal(100), max(Decimal(0), rule.risk_score * multiplier)))
            alerts.append(AmlAlert(
                rule_id=rule.id,
                alert_type=rule.alert_type.value,
                severity="critical" if score >= self.settings.aml.manual_review_score else rule.severity.value,
                description=rule.render_description(context),
                risk_score=score,
                triggered_rules=[rule.name],
            ))

        screening = AmlScreening(
            user_id=user_id,
            amount=amount,
            alerts=alerts,
            requires_manual_review=any(a.risk_score >= self.settings.aml.manual_review_score for a in alerts),
        )
        if alerts:
            logger.warning(
                "AML screening for %s amount %s raised %d alert(s), max score %d",
                user_id, amount, len(alerts), screening.max_risk_score,
            )
        return screening

    def _organization_for(self, user_id: str) -> Optional[Organization]:
        user = self.storage.get_user(user_id)
        if not user or not user.get("organization_id"):
            return None
        row = self.storage.get_organization(user["organization_id"])
        return Organization(**row) if row else None

    def _build_context(self, user_id: str, amount: Decimal, transaction_type: str, rating: RiskRating) -> dict:
        now = self.clock()
        tz = self.settings.timezone
        today = business_date(now, tz)
        lookback = now - timedelta(days=self.settings.aml.structuring_lookback_days)
        threshold = self.settings.aml.reporting_threshold
        band_floor = threshold * self.settings.aml.structuring_band

        recent = self.storage.list_transactions(
            lambda t: t["from_user_id"] == user_id
            and t["created_at"] >= lookback
            and t["status"] != TransactionStatus.REJECTED
        )
        todays = [t for t in recent if business_date(t["created_at"], tz) == today]
        daily_total = sum((t["amount"] for t in todays), Decimal("0"))

        return {
            "amount": amount,
            "type": transaction_type,
            "daily_count": len(todays),
            "daily_total": daily_total,
            "daily_total_with_amount": daily_total + amount,
            "near_threshold_count": sum(1 for t in recent if band_floor <= t["amount"] < threshold),
            "is_round_number": amount % 10000 == 0,
            "organization": {"risk_rating": rating.value},
        }
