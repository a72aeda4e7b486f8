"""Vertical profiles: industry classification -> report shape and emphasis."""
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Section:
    id: str
    title: str
    enabled: bool = True


REPORT_SECTIONS: tuple[Section, ...] = (
    Section("exec", "Executive Summary"),
    Section("market", "Market Overview"),
    Section("competitors", "Competitor Landscape"),
    Section("capabilities", "Capability Matrix"),
    Section("pricing", "Pricing Comparison"),
    Section("integrations", "Integrations Ecosystem"),
    Section("security", "Security & Compliance"),
    Section("deployment", "Deployment & Performance"),
    Section("gtm", "GTM Motions & ICPs"),
    Section("roadmap", "Suggested Roadmap"),
)


@dataclass(frozen=True)
class VerticalProfile:
    key: str
    capabilities: tuple[str, ...]
    query_accents: tuple[str, ...]
    must_have: tuple[str, ...] = ()
    compliance: tuple[str, ...] = ()
    sections: tuple[Section, ...] = field(default=REPORT_SECTIONS)


FINTECH = VerticalProfile(
    "FINTECH",
    capabilities=("Integrations", "Security", "Compliance", "API", "Reporting"),
    compliance=("PCI-DSS", "SOC 2", "GDPR"),
    query_accents=("regulatory", "fees", "interchange", "PCI DSS", "SOC 2", "KYC", "AML", "sandbox", "API docs"),
)
HEALTHCARE = VerticalProfile(
    "HEALTHCARE",
    capabilities=("Compliance", "Security", "Integrations", "EHR", "Analytics"),
    compliance=("HIPAA", "SOC 2", "GDPR"),
    query_accents=("HIPAA", "BAA", "PHI", "EHR integrations", "HL7", "FHIR"),
)
DEVTOOLS = VerticalProfile(
    "DEVTOOLS",
    capabilities=("API", "SDKs", "Integrations", "Performance", "DX"),
    must_have=("OpenAPI", "CLI", "Webhooks"),
    query_accents=("SDKs", "OpenAPI", "webhooks", "rate limits", "self-hosted", "on-prem", "SLA"),
)
API_PLATFORM = VerticalProfile(
    "API_PLATFORM",
    capabilities=("API", "Integrations", "Security", "SLAs", "Analytics"),
    must_have=("Rate limiting", "Webhooks"),
    query_accents=("API reference", "SLAs", "status page", "latency", "SDKs"),
)
ECOMMERCE_TOOL = VerticalProfile(
    "ECOMMERCE_TOOL",
    capabilities=("Integrations", "Automation", "Analytics", "A/B Testing", "Personalization"),
    query_accents=("Shopify", "Magento", "WooCommerce", "conversion rate", "checkout", "A/B test"),
)
CONSUMER_APP = VerticalProfile(
    "CONSUMER_APP",
    capabilities=("Growth", "Engagement", "Payments", "Sharing", "Mobile"),
    query_accents=("retention", "activation", "growth loop", "share", "mobile app", "reviews"),
)
B2B_SAAS = VerticalProfile(
    "B2B_SAAS",
    capabilities=("Integrations", "Automation", "Analytics", "Permissions", "Security"),
    compliance=("SOC 2", "GDPR"),
    query_accents=("case study", "alternatives", "comparison", "pricing", "integration list", "security"),
)


def infer_vertical(industry: str | None = None, sub_industry: str | None = None) -> VerticalProfile:
    """Pick the profile for an industry / sub-industry pair.

    Rules are checked in a fixed order; the first match wins and anything
    unmatched is treated as general B2B SaaS.
    """
    i = (industry or "").lower()
    s = (sub_industry or "").lower()

    if "fintech" in i or "payments" in s:
        return FINTECH
    if "health" in i or "hipaa" in s:
        return HEALTHCARE
    if "dev" in i or "api" in s or "observability" in s:
        return DEVTOOLS
    if "api" in i:
        return API_PLATFORM
    if "ecom" in i:
        return ECOMMERCE_TOOL
    if "consumer" in i or "social" in i:
        return CONSUMER_APP
    return B2B_SAAS
