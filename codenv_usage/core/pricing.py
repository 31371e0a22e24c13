"""
Pricing calculations and rate management.

Resolves a per-model price table (with profile overrides and a
multiplier) and computes cost from a token breakdown.
"""

import re
from dataclasses import dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

from codenv_usage.config.loader import ProfileConfig, UsageConfig

from .token_counter import TokenUsage

TOKENS_PER_MILLION = Decimal("1000000")

PRICE_FIELDS = ("input", "output", "cache_read", "cache_write")
_CONFIG_PRICE_KEYS = {
    "input": ("input",),
    "output": ("output",),
    "cache_read": ("cacheRead", "cache_read"),
    "cache_write": ("cacheWrite", "cache_write"),
}
_PRICE_PATTERN = re.compile(r"(-)?\$?(\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)")


@dataclass(frozen=True)
class TokenPricing:
    """Prices in USD per million tokens; None means unknown."""
    input: Optional[Decimal] = None
    output: Optional[Decimal] = None
    cache_read: Optional[Decimal] = None
    cache_write: Optional[Decimal] = None
    description: Optional[str] = None

    @property
    def has_prices(self) -> bool:
        return any(getattr(self, name) is not None for name in PRICE_FIELDS)

    def merged_with(self, override: Optional["TokenPricing"]) -> "TokenPricing":
        """Fields set on ``override`` win over this pricing's fields."""
        if override is None:
            return self
        changes = {
            f.name: getattr(override, f.name)
            for f in fields(override)
            if getattr(override, f.name) is not None
        }
        return replace(self, **changes)

    def scaled(self, multiplier: Optional[Decimal]) -> "TokenPricing":
        if multiplier is None:
            return self
        changes = {
            name: getattr(self, name) * multiplier
            for name in PRICE_FIELDS
            if getattr(self, name) is not None
        }
        return replace(self, **changes)


def _pricing(input, output, cache_read=None, cache_write=None, description=None):
    return TokenPricing(
        input=Decimal(input),
        output=Decimal(output),
        cache_read=Decimal(cache_read) if cache_read is not None else None,
        cache_write=Decimal(cache_write) if cache_write is not None else None,
        description=description,
    )


_SONNET = _pricing("3.00", "15.00", "0.30", "3.75", "Balanced performance and speed for daily use.")
_OPUS = _pricing("5.00", "25.00", "0.50", "6.25", "Most capable model for agents and coding.")
_HAIKU = _pricing("1.00", "5.00", "0.10", "1.25", "Fast responses for lightweight tasks.")

# Built-in table; config pricing.models entries shadow these.
DEFAULT_MODEL_PRICING: Dict[str, TokenPricing] = {
    "Claude Sonnet 4.5": _SONNET,
    "Sonnet 4.5": _SONNET,
    "claude-sonnet-4-5-20250929": _SONNET,
    "claude-sonnet-4-5-20251022": _SONNET,
    "Claude Opus 4.5": _OPUS,
    "Opus 4.5": _OPUS,
    "claude-opus-4-5-20251101": _OPUS,
    "Claude Haiku 4.5": _HAIKU,
    "Haiku 4.5": _HAIKU,
    "claude-haiku-4-5-20251001": _HAIKU,
    "claude-haiku-4-5-20251022": _HAIKU,
    "gpt-5.1": _pricing("1.25", "10.00", "0.125", description="Base model for daily development work."),
    "gpt-5.1-codex": _pricing("1.25", "10.00", "0.125", description="Code-focused model for programming workflows."),
    "gpt-5.1-codex-max": _pricing("1.25", "10.00", "0.125", description="Flagship code model for complex projects."),
    "gpt-5.2": _pricing("1.75", "14.00", "0.175", description="Latest flagship model with improved performance."),
    "gpt-5.2-codex": _pricing("1.75", "14.00", "0.175", description="Latest flagship code model."),
}


def normalize_model_key(model: str) -> str:
    """Case- and punctuation-insensitive model key ("GPT-5.1" -> "gpt51")."""
    return re.sub(r"[^a-z0-9]+", "", str(model).lower())


def parse_price_value(value: Any) -> Optional[Decimal]:
    """Parse a price from a number or a string such as "$3.00", "1,250" or "1e-3".

    Returns None for anything that isn't a finite, non-negative number.
    """
    if value is None or isinstance(value, bool):
        return None
    parsed = None
    if isinstance(value, (int, float)):
        try:
            parsed = Decimal(str(value))
        except InvalidOperation:
            return None
    elif isinstance(value, str):
        match = _PRICE_PATTERN.search(value.replace(",", ""))
        if match is None or match.group(1):
            return None
        parsed = Decimal(match.group(2))
    if parsed is None or not parsed.is_finite() or parsed < 0:
        return None
    return parsed


def compact_pricing(raw: Optional[Mapping[str, Any]]) -> Optional[TokenPricing]:
    """Build TokenPricing from a config mapping; None if it holds no prices."""
    if not isinstance(raw, Mapping):
        return None
    prices = {}
    for name, keys in _CONFIG_PRICE_KEYS.items():
        for key in keys:
            parsed = parse_price_value(raw.get(key))
            if parsed is not None:
                prices[name] = parsed
                break
    if not prices:
        return None
    description = raw.get("description")
    if isinstance(description, str) and description.strip():
        prices["description"] = description.strip()
    return TokenPricing(**prices)


def _build_model_index(models: Mapping[str, Any]) -> Dict[str, TokenPricing]:
    index = {}
    for model, pricing in models.items():
        key = normalize_model_key(model)
        if not key:
            continue
        if isinstance(pricing, TokenPricing):
            cleaned = pricing if pricing.has_prices else None
        else:
            cleaned = compact_pricing(pricing)
        if cleaned is not None:
            index[key] = cleaned
    return index


_DEFAULT_INDEX = _build_model_index(DEFAULT_MODEL_PRICING)


def lookup_model_pricing(config: Optional[UsageConfig], model: Optional[str]) -> Optional[TokenPricing]:
    """Look up pricing for ``model``: config table first, then built-ins."""
    if not model:
        return None
    key = normalize_model_key(model)
    if not key:
        return None
    if config is not None and config.pricing_models:
        configured = _build_model_index(config.pricing_models).get(key)
        if configured is not None:
            return configured
    return _DEFAULT_INDEX.get(key)


def resolve_multiplier(value: Any) -> Optional[Decimal]:
    """A usable multiplier is a non-negative number; anything else is ignored."""
    parsed = parse_price_value(value)
    if parsed is None or parsed < 0:
        return None
    return parsed


def _profile_pricing(profile: Optional[ProfileConfig]) -> Tuple[Optional[str], Optional[TokenPricing], Any]:
    if profile is None or not profile.pricing:
        return None, None, None
    raw = profile.pricing
    model = raw.get("model")
    model = model.strip() if isinstance(model, str) and model.strip() else None
    return model, compact_pricing(raw), raw.get("multiplier")


def resolve_pricing(
    config: Optional[UsageConfig],
    profile: Optional[ProfileConfig],
    model_hint: Optional[str],
) -> Optional[TokenPricing]:
    """Resolve the effective price table for a profile.

    Precedence, highest first:
    1. explicit per-field prices on the profile
    2. pricing of the model the profile declares
    3. pricing of ``model_hint`` (the model observed in the session)
    4. built-in defaults (consulted by the lookups in 2 and 3)

    The profile multiplier, when valid, scales every resolved price.

    Args:
        config: Usage configuration holding the pricing.models table
        profile: Profile being priced, if known
        model_hint: Model name observed upstream

    Returns:
        TokenPricing, or None if nothing could be resolved
    """
    profile_model, overrides, raw_multiplier = _profile_pricing(profile)

    resolved: Optional[TokenPricing] = None
    for candidate in (
        lookup_model_pricing(config, model_hint),
        lookup_model_pricing(config, profile_model),
        overrides,
    ):
        if candidate is None:
            continue
        resolved = candidate if resolved is None else resolved.merged_with(candidate)

    if resolved is None or not resolved.has_prices:
        return None
    return resolved.scaled(resolve_multiplier(raw_multiplier))


def calculate_cost(usage: Optional[TokenUsage], pricing: Optional[TokenPricing]) -> Optional[float]:
    """Calculate cost in USD for a token breakdown.

    Every token category with a nonzero count needs a price, otherwise
    the whole cost is unknown (None). A positive total with an empty
    breakdown is also unknown, since it cannot be split across prices.

    Args:
        usage: Token breakdown
        pricing: Resolved price table

    Returns:
        Cost in USD, or None if it cannot be computed without guessing
    """
    if usage is None or pricing is None:
        return None
    if usage.breakdown_total == 0 and usage.total_tokens > 0:
        return None

    total = Decimal(0)
    for tokens, price in (
        (usage.input_tokens, pricing.input),
        (usage.output_tokens, pricing.output),
        (usage.cache_read_tokens, pricing.cache_read),
        (usage.cache_write_tokens, pricing.cache_write),
    ):
        if tokens <= 0:
            continue
        if price is None:
            return None
        total += Decimal(tokens) * price

    return float(total / TOKENS_PER_MILLION)


def format_usd(amount: Optional[float]) -> str:
    """Format a cost with more decimals for small amounts ("-" if unknown)."""
    if amount is None:
        return "-"
    normalized = 0.0 if abs(amount) < 1e-12 else amount
    magnitude = abs(normalized)
    decimals = 2
    if magnitude < 1:
        decimals = 4
    if magnitude < 0.1:
        decimals = 5
    if magnitude < 0.01:
        decimals = 6
    text = f"{normalized:.{decimals}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return f"${text}"
