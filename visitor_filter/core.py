from dataclasses import dataclass, field
from typing import Any, FrozenSet, List, Mapping, Optional, Tuple

from visitor_filter.visitor import (
    CountryLookup,
    VisitorContext,
    VisitorMarker,
    resolve_context,
)

# recognized mapping keys -> FilterConfig fields
FLAG_KEYS = {
    "allowToAll": "allow_to_all",
    "disallowIfVisitorWasHere": "disallow_if_visitor_was_here",
}
LIST_KEYS = {
    "disallowedCountries": "disallowed_countries",
    "disallowedLanguages": "disallowed_languages",
    "disallowedReferers": "disallowed_referers",
    "disallowedIpAddresses": "disallowed_ip_addresses",
}


class ConfigError(ValueError):
    pass


def _as_string_set(key: str, value: Any) -> FrozenSet[str]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)):
        raise ConfigError(f"{key} must be a list of strings, got {type(value).__name__}")
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} entries must be strings, got {item!r}")
    return frozenset(value)


@dataclass(frozen=True)
class FilterConfig:
    allow_to_all: bool = False
    disallowed_countries: FrozenSet[str] = field(default_factory=frozenset)
    disallowed_languages: FrozenSet[str] = field(default_factory=frozenset)
    disallowed_referers: FrozenSet[str] = field(default_factory=frozenset)
    disallowed_ip_addresses: FrozenSet[str] = field(default_factory=frozenset)
    disallow_if_visitor_was_here: bool = False

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "FilterConfig":
        """
        Build a config from the plain camelCase mapping, e.g.

            {"allowToAll": False, "disallowedCountries": ["US"], ...}

        Unknown keys and wrong types raise ConfigError. Missing keys keep defaults.
        """
        unknown = set(mapping) - set(FLAG_KEYS) - set(LIST_KEYS)
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(sorted(unknown))}")

        kwargs = {}
        for key, attr in FLAG_KEYS.items():
            if key in mapping:
                if not isinstance(mapping[key], bool):
                    raise ConfigError(f"{key} must be a bool, got {mapping[key]!r}")
                kwargs[attr] = mapping[key]
        for key, attr in LIST_KEYS.items():
            if key in mapping:
                kwargs[attr] = _as_string_set(key, mapping[key])

        # "" is a substring of every referer
        if "" in kwargs.get("disallowed_referers", ()):
            raise ConfigError("disallowedReferers must not contain an empty string")

        return cls(**kwargs)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reasons: Tuple[str, ...]
    context: VisitorContext


def denial_reasons(config: FilterConfig, context: VisitorContext) -> List[str]:
    """Names of the denylist rules the context matches. No side effects."""
    if config.allow_to_all:
        return []

    reasons = []
    if context.country_iso_code is not None and context.country_iso_code in config.disallowed_countries:
        reasons.append("country")
    if context.ip is not None and context.ip in config.disallowed_ip_addresses:
        reasons.append("ip")
    if context.language is not None and context.language in config.disallowed_languages:
        reasons.append("language")
    if context.http_referer is not None and any(
        fragment in context.http_referer for fragment in config.disallowed_referers
    ):
        reasons.append("referer")
    if config.disallow_if_visitor_was_here and context.was_here_before:
        reasons.append("visited")
    return reasons


def evaluate(config: FilterConfig, context: VisitorContext, marker: Optional[VisitorMarker] = None) -> bool:
    return _decide(config, context, marker).allowed


def _decide(config: FilterConfig, context: VisitorContext, marker: Optional[VisitorMarker]) -> Decision:
    if config.allow_to_all:
        return Decision(True, (), context)

    reasons = denial_reasons(config, context)

    # refresh the marker even for denied and first-time visitors
    if config.disallow_if_visitor_was_here and marker is not None:
        marker.mark_visited()

    return Decision(not reasons, tuple(reasons), context)


class VisitorFilter:
    """
    Allows or denies a visitor by country, ip, language, referer and prior visits.

        vf = VisitorFilter.from_mapping({"disallowedCountries": ["US"]}, geo=lookup)
        vf.is_allow(signals, marker)
    """

    def __init__(self, config: FilterConfig, geo: Optional[CountryLookup] = None):
        self.config = config
        self.geo = geo

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], geo: Optional[CountryLookup] = None) -> "VisitorFilter":
        return cls(FilterConfig.from_mapping(mapping), geo)

    def context_for(self, signals: Mapping[str, str], marker: Optional[VisitorMarker] = None) -> VisitorContext:
        return resolve_context(signals, self.geo, marker)

    def decide(
        self,
        signals: Optional[Mapping[str, str]] = None,
        marker: Optional[VisitorMarker] = None,
        context: Optional[VisitorContext] = None,
    ) -> Decision:
        if self.config.allow_to_all:
            # no lookups, no marker write
            return Decision(True, (), context or VisitorContext())
        if context is None:
            context = self.context_for(signals or {}, marker)
        return _decide(self.config, context, marker)

    def is_allow(
        self,
        signals: Optional[Mapping[str, str]] = None,
        marker: Optional[VisitorMarker] = None,
        context: Optional[VisitorContext] = None,
    ) -> bool:
        return self.decide(signals, marker, context).allowed
