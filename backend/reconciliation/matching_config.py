"""
Matching Configuration Registry

Central registry of the tunable matching parameters, one configuration
per item kind. Each configuration holds:
- Signal weights (amount, counterparty, date)
- Tolerances (amount difference, date window)
- Thresholds (suggestion cut-off, auto-accept, ambiguity epsilon)

Weights are configuration, but their ordering is fixed:
amount > counterparty > date.
"""

from dataclasses import dataclass, asdict, replace
from typing import Dict, Any, List, Optional

from reconciliation.models import ItemKind


WEIGHT_SUM_TOLERANCE = 1e-9


@dataclass(frozen=True)
class MatchingConfig:
    """
    Parameters for scoring and auto-accepting matches.
    """
    weight_amount: float = 0.5
    weight_counterparty: float = 0.3
    weight_date: float = 0.2

    # Relative amount difference beyond which the amount signal is 0
    amount_tolerance: float = 0.15
    # Gap in days between item date and due date beyond which the date signal is 0
    date_window_days: int = 90

    # Free-text counterparty similarity below this ratio earns nothing
    fuzzy_min_ratio: float = 0.6
    # Best counterparty score obtainable without a linked counterparty
    fuzzy_max_credit: float = 0.8

    # Candidates must score strictly above this to be suggested
    suggest_threshold: float = 0.0
    auto_accept_threshold: float = 0.92
    ambiguity_epsilon: float = 0.02

    # Narrow the pool to the item's counterparty when it has one
    restrict_to_counterparty: bool = True
    max_candidates: Optional[int] = None

    def __post_init__(self):
        errors = self.validate()
        if errors:
            raise ValueError(f"Invalid matching configuration: {'; '.join(errors)}")

    def validate(self) -> List[str]:
        errors = []
        weights = (self.weight_amount, self.weight_counterparty, self.weight_date)
        if any(w < 0 for w in weights):
            errors.append("weights must be non-negative")
        if abs(sum(weights) - 1.0) > WEIGHT_SUM_TOLERANCE:
            errors.append(f"weights must sum to 1.0 (got {sum(weights)})")
        if not (self.weight_amount > self.weight_counterparty > self.weight_date):
            errors.append("weights must be ordered amount > counterparty > date")
        if not (0 < self.amount_tolerance <= 1):
            errors.append("amount_tolerance must be in (0, 1]")
        if self.date_window_days <= 0:
            errors.append("date_window_days must be positive")
        for name in ("fuzzy_min_ratio", "fuzzy_max_credit", "suggest_threshold",
                     "auto_accept_threshold", "ambiguity_epsilon"):
            value = getattr(self, name)
            if not (0 <= value <= 1):
                errors.append(f"{name} must be in [0, 1]")
        if self.max_candidates is not None and self.max_candidates <= 0:
            errors.append("max_candidates must be positive")
        return errors

    def with_overrides(self, **kwargs) -> "MatchingConfig":
        return replace(self, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MatchingConfigRegistry:
    """
    Holds one MatchingConfig per item kind.

    Configurations are immutable; updating a kind swaps in a new,
    validated instance.
    """

    def __init__(self, base: Optional[MatchingConfig] = None):
        base = base or MatchingConfig()
        self._configs: Dict[ItemKind, MatchingConfig] = {kind: base for kind in ItemKind}

    def get_config(self, kind: ItemKind) -> MatchingConfig:
        return self._configs[kind]

    def update_config(self, kind: ItemKind, **kwargs) -> MatchingConfig:
        """Replace the configuration for a kind. Raises ValueError if invalid."""
        config = self._configs[kind].with_overrides(**kwargs)
        self._configs[kind] = config
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {kind.value: cfg.to_dict() for kind, cfg in self._configs.items()}

    @classmethod
    def from_settings(cls, settings) -> "MatchingConfigRegistry":
        """Build the registry from application settings (RECON_* variables)."""
        return cls(MatchingConfig(
            weight_amount=settings.RECON_WEIGHT_AMOUNT,
            weight_counterparty=settings.RECON_WEIGHT_COUNTERPARTY,
            weight_date=settings.RECON_WEIGHT_DATE,
            amount_tolerance=settings.RECON_AMOUNT_TOLERANCE,
            date_window_days=settings.RECON_DATE_WINDOW_DAYS,
            auto_accept_threshold=settings.RECON_AUTO_ACCEPT_THRESHOLD,
            ambiguity_epsilon=settings.RECON_AMBIGUITY_EPSILON,
            restrict_to_counterparty=settings.RECON_RESTRICT_TO_COUNTERPARTY,
        ))
