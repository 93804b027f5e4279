"""
Pricing calculations for the bring-your-own-key comparison.

Prices are per million tokens, taken from the providers' published API
rates. Model names reported by the usage API do not always match a pricing
key exactly; those are mapped through an explicit alias table rather than
guessed at.
"""

from dataclasses import dataclass, field
from decimal import ROUND_UP, Decimal
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from usage_monitor.storage.models import ModelTokenTotals

from .errors import UnknownModelError

ONE_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_per_million: Decimal
    output_per_million: Decimal


def _p(input_price: str, output_price: str) -> ModelPricing:
    return ModelPricing(Decimal(input_price), Decimal(output_price))


# Fixed pricing table - no dynamic fetching
PRICES: Dict[str, Dict[str, ModelPricing]] = {
    "anthropic": {
        "claude-4.5-opus": _p("5.00", "25.00"),
        "claude-4.5-opus-high-thinking": _p("5.00", "25.00"),
        "claude-4.5-sonnet": _p("3.00", "15.00"),
        "claude-4.5-sonnet-thinking": _p("3.00", "15.00"),
        "claude-4.5-haiku": _p("1.00", "5.00"),
        "claude-4-opus": _p("15.00", "75.00"),
        "claude-4-opus-high-thinking": _p("15.00", "75.00"),
        "claude-4-sonnet": _p("3.00", "15.00"),
        "claude-4-sonnet-thinking": _p("3.00", "15.00"),
        "claude-3.5-sonnet": _p("3.00", "15.00"),
        "claude-3-opus": _p("15.00", "75.00"),
        "claude-3-sonnet": _p("3.00", "15.00"),
        "claude-3-haiku": _p("0.25", "1.25"),
    },
    "openai": {
        "gpt-5.2": _p("1.75", "14.00"),
        "gpt-5.2-pro": _p("21.00", "168.00"),
        "gpt-5-mini": _p("0.25", "2.00"),
        "gpt-4o": _p("2.50", "10.00"),
        "gpt-4o-mini": _p("0.15", "0.60"),
        "gpt-4": _p("30.00", "60.00"),
        "gpt-4-turbo": _p("10.00", "30.00"),
        "o1": _p("15.00", "60.00"),
        "o1-mini": _p("3.00", "12.00"),
    },
    "google": {
        "gemini-3-pro": _p("2.00", "12.00"),
        "gemini-3-pro-preview": _p("2.00", "12.00"),
        "gemini-2.5-pro": _p("1.25", "10.00"),
        "gemini-2.0-flash": _p("0.10", "0.40"),
        "gemini-1.5-pro": _p("1.25", "5.00"),
        "gemini-1.5-flash": _p("0.075", "0.30"),
    },
}

# Usage API model name -> pricing key
DEFAULT_ALIASES: Dict[str, str] = {
    "claude-3-5-sonnet": "claude-3.5-sonnet",
    "claude-4-5-sonnet": "claude-4.5-sonnet",
    "claude-4-5-opus": "claude-4.5-opus",
    "claude-4.5-sonnet-high-thinking": "claude-4.5-sonnet-thinking",
    "sonnet-4.5": "claude-4.5-sonnet",
    "opus-4.5": "claude-4.5-opus",
    "gemini-3-pro-high": "gemini-3-pro",
    "gpt-4o-2024-08-06": "gpt-4o",
}


@dataclass(frozen=True)
class PricingTable:
    """Provider price lists plus the alias table used for lookups."""
    prices: Mapping[str, Mapping[str, ModelPricing]]
    aliases: Mapping[str, str] = field(default_factory=dict)

    def with_aliases(self, extra: Mapping[str, str]) -> "PricingTable":
        """Return a copy whose alias table also contains ``extra``.

        Raises:
            ValueError: If an alias points at a key with no price
        """
        merged = dict(self.aliases)
        merged.update(extra)
        for model, key in extra.items():
            if self._find(key) is None:
                raise ValueError(f"Alias {model!r} points at unknown pricing key {key!r}")
        return PricingTable(prices=self.prices, aliases=merged)

    def _find(self, key: str) -> Optional[Tuple[str, ModelPricing]]:
        for provider, models in self.prices.items():
            if key in models:
                return provider, models[key]
        return None

    def lookup(self, model: str) -> Tuple[str, ModelPricing]:
        """Get the provider and pricing for a model.

        The exact name is tried first, then the alias table.

        Raises:
            UnknownModelError: If neither yields a price
        """
        found = self._find(model)
        if found is None and model in self.aliases:
            found = self._find(self.aliases[model])
        if found is None:
            raise UnknownModelError(model)
        return found

    def get_pricing(self, model: str) -> ModelPricing:
        return self.lookup(model)[1]


PRICING_TABLE = PricingTable(prices=PRICES, aliases=DEFAULT_ALIASES)


def calculate_direct_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    table: PricingTable = PRICING_TABLE,
) -> float:
    """Calculate what a model's usage would cost at direct API prices.

    Args:
        model: Model name as reported by the usage API
        input_tokens: Input tokens (including cache reads and writes)
        output_tokens: Output tokens
        table: Pricing table to use

    Returns:
        Total cost rounded UP to 2 decimal places

    Raises:
        UnknownModelError: If the model has no price
    """
    pricing = table.get_pricing(model)

    input_cost = (Decimal(input_tokens) / ONE_MILLION) * pricing.input_per_million
    output_cost = (Decimal(output_tokens) / ONE_MILLION) * pricing.output_per_million

    total_cost = input_cost + output_cost
    return float(total_cost.quantize(Decimal("0.01"), rounding=ROUND_UP))


@dataclass(frozen=True)
class CostComparison:
    """Billed spend next to the direct-API cost of the same usage."""
    billing_cycle: str
    billed_usd: float
    direct_by_provider: Dict[str, float]
    unknown_models: Tuple[str, ...] = ()

    def savings(self, provider: str) -> float:
        """Billed minus direct cost; 0 when the provider had no priced usage."""
        direct = self.direct_by_provider.get(provider, 0.0)
        if direct <= 0:
            return 0.0
        return round(self.billed_usd - direct, 2)

    @property
    def total_direct_usd(self) -> float:
        return round(sum(self.direct_by_provider.values()), 2)


def compare_costs(
    billing_cycle: str,
    billed_cents: int,
    model_totals: Sequence[ModelTokenTotals],
    table: PricingTable = PRICING_TABLE,
) -> CostComparison:
    """Compare a cycle's billed spend with direct provider pricing.

    Models without a price (internal agents, "default") are skipped and
    listed in ``unknown_models``.
    """
    direct: Dict[str, float] = {provider: 0.0 for provider in table.prices}
    unknown: List[str] = []
    for totals in model_totals:
        try:
            provider, _ = table.lookup(totals.model)
        except UnknownModelError:
            unknown.append(totals.model)
            continue
        direct[provider] += calculate_direct_cost(
            totals.model, totals.input_tokens, totals.output_tokens, table
        )

    return CostComparison(
        billing_cycle=billing_cycle,
        billed_usd=billed_cents / 100.0,
        direct_by_provider={p: round(v, 2) for p, v in direct.items()},
        unknown_models=tuple(unknown),
    )
