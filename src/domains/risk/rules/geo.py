"""Geography-based detection rules."""

from datetime import datetime

from pydantic import Field

from ..models import RuleResult, RuleType, Transaction, WindowSnapshot
from .base import DetectionRule, RuleParams
from .geo_data import StaticCountryRiskTable

SANCTIONED_SCORE = 100.0


class _CountryRule(DetectionRule):
    """Shared sanctioned-country handling for the geographic rules."""

    def _provider(self):
        return self.deps.country_risk

    def _sanctioned(self, country: str) -> RuleResult | None:
        # The shared sanctions list always applies, even with inline ratings
        shared = self.deps.country_risk
        provider = self._provider()
        sanctioned = shared.is_sanctioned(country) or (
            provider is not shared and provider.is_sanctioned(country)
        )
        if not sanctioned:
            return None
        return self._triggered(
            score=SANCTIONED_SCORE,
            details=f"Sanctioned country: {country}",
            severity="critical",
            evidence={"country": country, "sanctioned": True},
        )


class GeographicRiskParams(RuleParams):
    min_rating: float = Field(default=50.0, ge=0.0, le=100.0)
    # Inline ratings replace the shared provider for this rule
    ratings: dict[str, float] | None = None
    sanctioned_countries: list[str] | None = None


class GeographicRiskRule(_CountryRule):
    """Scores the transaction country by its risk rating."""

    rule_type = RuleType.GEOGRAPHIC_RISK
    Params = GeographicRiskParams

    def __init__(self, definition, deps=None) -> None:
        super().__init__(definition, deps)
        params: GeographicRiskParams = self.params
        if params.ratings is not None or params.sanctioned_countries is not None:
            self._table = StaticCountryRiskTable(
                ratings=params.ratings or {},
                sanctioned=params.sanctioned_countries or (),
            )
        else:
            self._table = None

    def _provider(self):
        return self._table or self.deps.country_risk

    def evaluate(
        self,
        transaction: Transaction,
        snapshot: WindowSnapshot,
        now: datetime,
    ) -> RuleResult:
        country = transaction.country
        if not country:
            return self._not_triggered()

        if sanctioned := self._sanctioned(country):
            return sanctioned

        rating = self._provider().rating(country)
        if rating is None or rating < self.params.min_rating:
            return self._not_triggered()

        return self._triggered(
            score=min(max(rating, 0.0), 100.0),
            details=f"Country {country} risk rating {rating:.0f}",
            severity="high" if rating >= 75 else "medium",
            evidence={"country": country, "rating": rating, "min_rating": self.params.min_rating},
        )


class HighRiskCountryParams(RuleParams):
    countries: list[str] | None = None
    score: float = Field(default=70.0, ge=0.0, le=100.0)


class HighRiskCountryRule(_CountryRule):
    """Triggers for countries on the high-risk list."""

    rule_type = RuleType.HIGH_RISK_COUNTRY
    Params = HighRiskCountryParams

    def evaluate(
        self,
        transaction: Transaction,
        snapshot: WindowSnapshot,
        now: datetime,
    ) -> RuleResult:
        country = transaction.country
        if not country:
            return self._not_triggered()

        if sanctioned := self._sanctioned(country):
            return sanctioned

        params: HighRiskCountryParams = self.params
        if params.countries is not None:
            listed = country in {c.upper() for c in params.countries}
        else:
            listed = self._provider().is_high_risk(country)
        if not listed:
            return self._not_triggered()

        return self._triggered(
            score=params.score,
            details=f"Transaction from high-risk country {country}",
            severity="high",
            evidence={"country": country},
        )
