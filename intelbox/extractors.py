"""Heuristic entity extractors.

Each extractor is a small stateless object with ``applies_to(title, text)``
and ``extract(text)``. They are collected in an :class:`ExtractorRegistry`
so the orchestrator runs them uniformly and any one of them can be swapped
or tested alone.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Union

from intelbox.pricing import PricingRow, extract_pricing
from intelbox.utils import normalize_word

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapabilityHit:
    category: str
    name: str
    normalized: str


@dataclass(frozen=True)
class ComplianceHit:
    framework: str


@dataclass(frozen=True)
class IntegrationHit:
    name: str
    vendor: str
    category: str | None = None


Entity = Union[CapabilityHit, ComplianceHit, IntegrationHit, PricingRow]


class Extractor:
    name = "base"

    def applies_to(self, title: str | None, text: str) -> bool:
        return True

    def extract(self, text: str) -> list[Entity]:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------

VENDORS = (
    "Shopify", "Salesforce", "HubSpot", "Zapier", "Stripe", "Segment", "Snowflake", "Slack",
    "Google Analytics", "Datadog", "Amplitude", "Notion", "Zendesk", "PayPal", "Adyen",
    "Paddle", "Klaviyo", "Marketo", "Intercom",
)
_CAPABILITY_VENDORS = VENDORS[:9]


def _words(*alternatives: str) -> re.Pattern[str]:
    return re.compile(r"\b(?P<name>" + "|".join(alternatives) + r")\b", re.I)


CAPABILITY_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "Integrations": [
        re.compile(
            r"(?i:\bintegrat(?:e|es|ion|ions)\s+with)\s+"
            r"(?P<name>[A-Z][\w+.\-]*(?: [A-Z][\w+.\-]*){0,3})"
        ),
        _words(*_CAPABILITY_VENDORS),
    ],
    "Security": [_words(
        "SSO", "SAML", "SCIM", "RBAC", "encryption at rest", "encryption in transit",
        r"audit logs?", "MFA", "2FA",
    )],
    "Compliance": [_words(r"SOC\s*2", "HIPAA", "GDPR", r"PCI[-\s]?DSS", r"ISO\s*27001", "BAA")],
    "API": [_words("OpenAPI", "Swagger", "REST", "GraphQL", r"webhooks?", r"SDKs?")],
    "Performance": [re.compile(
        r"(?P<name>\blatency\b|\bthroughput\b|\b99\.9+%|\bSLA\b|\bRPS\b|\bQPS\b|\bcold start\b)", re.I,
    )],
    "Automation": [_words(r"workflows?", r"automations?", r"triggers?", "rules engine", r"playbooks?")],
    "Analytics": [_words(r"dashboards?", "reporting", "attribution", "cohort", "funnel")],
    "Permissions": [_words("RBAC", "ABAC", r"roles?", r"permissions?", r"orgs?", r"teams?")],
    "Growth": [re.compile(r"(?P<name>\breferral\b|\binvite\b|\bwaitlist\b|\bviral\b|\bA/B\b|\bexperiments?\b)", re.I)],
}


def extract_capabilities(text: str) -> list[CapabilityHit]:
    """Category-tagged capability mentions, unique on (category, normalized)."""
    seen: set[tuple[str, str]] = set()
    hits: list[CapabilityHit] = []
    for category, patterns in CAPABILITY_PATTERNS.items():
        for pattern in patterns:
            for m in pattern.finditer(text):
                name = m.group("name").strip()
                norm = normalize_word(name)
                if len(norm) < 2:
                    continue
                key = (category, norm)
                if key in seen:
                    continue
                seen.add(key)
                hits.append(CapabilityHit(category, name, norm))
    return hits


class CapabilityExtractor(Extractor):
    name = "capabilities"

    def extract(self, text: str) -> list[Entity]:
        return list(extract_capabilities(text))


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------

_COMPLIANCE_RE = re.compile(r"\b(SOC\s*2|HIPAA|GDPR|PCI[-\s]?DSS|ISO\s*27001|BAA)\b", re.I)


def canonical_framework(raw: str) -> str:
    key = re.sub(r"[\s\-]+", "", raw).upper()
    return {
        "SOC2": "SOC 2",
        "PCIDSS": "PCI-DSS",
        "ISO27001": "ISO 27001",
    }.get(key, key)


class ComplianceExtractor(Extractor):
    name = "compliance"

    def extract(self, text: str) -> list[Entity]:
        frameworks = dict.fromkeys(canonical_framework(m.group(1)) for m in _COMPLIANCE_RE.finditer(text))
        return [ComplianceHit(f) for f in frameworks]


# ---------------------------------------------------------------------------
# Integrations (named vendors)
# ---------------------------------------------------------------------------

_VENDOR_RE = re.compile(r"\b(" + "|".join(re.escape(v) for v in VENDORS) + r")\b", re.I)
_VENDOR_CANONICAL = {v.lower(): v for v in VENDORS}

_INTEGRATION_CATEGORIES = (
    (re.compile(r"shopify|woocommerce|magento"), "Ecommerce"),
    (re.compile(r"salesforce|hubspot|pipedrive|zoho"), "CRM"),
    (re.compile(r"segment|snowflake|amplitude|google analytics|datadog"), "Data/Analytics"),
    (re.compile(r"stripe|paypal|adyen|paddle"), "Payments"),
    (re.compile(r"slack|notion"), "Productivity"),
)


def infer_integration_category(vendor: str) -> str | None:
    s = vendor.lower()
    for pattern, category in _INTEGRATION_CATEGORIES:
        if pattern.search(s):
            return category
    return None


class IntegrationExtractor(Extractor):
    name = "integrations"

    def extract(self, text: str) -> list[Entity]:
        vendors = dict.fromkeys(
            _VENDOR_CANONICAL.get(m.group(1).lower(), m.group(1)) for m in _VENDOR_RE.finditer(text)
        )
        return [IntegrationHit(v, v, infer_integration_category(v)) for v in vendors]


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

_PRICING_PAGE_RE = re.compile(r"\b(pricing|plans?|fees?)\b", re.I)


def looks_like_pricing_page(title: str | None, text: str | None) -> bool:
    return bool(_PRICING_PAGE_RE.search(f"{title or ''} {(text or '')[:3000]}"))


class PricingExtractor(Extractor):
    name = "pricing"

    def applies_to(self, title: str | None, text: str) -> bool:
        return looks_like_pricing_page(title, text)

    def extract(self, text: str) -> list[Entity]:
        return list(extract_pricing(text))


# ---------------------------------------------------------------------------
# Competitor identity & feature descriptions
# ---------------------------------------------------------------------------


def guess_brand_name(title: str | None, domain: str | None) -> str | None:
    """Brand from the page title (tagline suffix stripped) or the domain."""
    if title:
        cleaned = re.sub(r"\s*[-–|·].*$", "", title, flags=re.S).strip()
        if cleaned and len(cleaned) <= 50:
            return cleaned
    if domain:
        base = domain.lower().removeprefix("www.").split(".")[0]
        if len(base) >= 3:
            return base[:1].upper() + base[1:]
    return None


def extract_feature_description(text: str, term: str, limit: int = 240) -> str | None:
    needle = term.lower()
    for sentence in re.split(r"[.!?]\s+", text):
        if needle in sentence.lower():
            return sentence.strip()[:limit]
    return None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass
class ExtractionResult:
    capabilities: list[CapabilityHit] = field(default_factory=list)
    compliance: list[ComplianceHit] = field(default_factory=list)
    integrations: list[IntegrationHit] = field(default_factory=list)
    pricing: list[PricingRow] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)  # extractor name -> message

    def add(self, entity: Entity) -> None:
        if isinstance(entity, CapabilityHit):
            self.capabilities.append(entity)
        elif isinstance(entity, ComplianceHit):
            self.compliance.append(entity)
        elif isinstance(entity, IntegrationHit):
            self.integrations.append(entity)
        elif isinstance(entity, PricingRow):
            self.pricing.append(entity)
        else:
            raise TypeError(f"Unknown entity type: {type(entity).__name__}")


class ExtractorRegistry:
    def __init__(self, extractors: list[Extractor] | None = None):
        self._extractors: dict[str, Extractor] = {}
        for extractor in extractors or []:
            self.register(extractor)

    def register(self, extractor: Extractor) -> None:
        self._extractors[extractor.name] = extractor

    def get(self, name: str) -> Extractor | None:
        return self._extractors.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._extractors)

    def run(self, title: str | None, text: str) -> ExtractionResult:
        """Run every applicable extractor; a failing extractor is recorded, not raised."""
        result = ExtractionResult()
        for name, extractor in self._extractors.items():
            if not extractor.applies_to(title, text):
                continue
            try:
                entities = extractor.extract(text)
            except Exception as exc:
                log.warning("Extractor %s failed: %s", name, exc)
                result.errors[name] = f"{type(exc).__name__}: {exc}"
                continue
            for entity in entities:
                result.add(entity)
        return result


def default_registry() -> ExtractorRegistry:
    return ExtractorRegistry([
        CapabilityExtractor(),
        IntegrationExtractor(),
        ComplianceExtractor(),
        PricingExtractor(),
    ])
