"""Country risk lookups used by the geographic rules."""

from collections.abc import Iterable, Mapping
from typing import Protocol


class CountryRiskProvider(Protocol):
    """Risk-rating source keyed by ISO-3166 alpha-2 country code.

    Implementations may be a static table or a client for an external
    rating service that keeps its own cache; lookups must be synchronous.
    """

    def rating(self, country: str) -> float | None: ...

    def is_high_risk(self, country: str) -> bool: ...

    def is_sanctioned(self, country: str) -> bool: ...


class StaticCountryRiskTable:
    def __init__(
        self,
        ratings: Mapping[str, float] | None = None,
        high_risk: Iterable[str] = (),
        sanctioned: Iterable[str] = (),
    ) -> None:
        self._ratings = {k.upper(): float(v) for k, v in (ratings or {}).items()}
        self._high_risk = frozenset(c.upper() for c in high_risk)
        self._sanctioned = frozenset(c.upper() for c in sanctioned)

    @classmethod
    def from_config(cls, geo) -> "StaticCountryRiskTable":
        return cls(
            ratings=geo.country_ratings,
            high_risk=geo.high_risk_countries,
            sanctioned=geo.sanctioned_countries,
        )

    def rating(self, country: str) -> float | None:
        return self._ratings.get(country.upper())

    def is_high_risk(self, country: str) -> bool:
        return country.upper() in self._high_risk

    def is_sanctioned(self, country: str) -> bool:
        return country.upper() in self._sanctioned
