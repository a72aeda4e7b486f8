from __future__ import annotations

from intelbox.models import Capability, Competitor, ComplianceItem, PricingPoint, Project, Source
from intelbox.report import ReportContext, ReportFinding, render_markdown, report_headline
from intelbox.verticals import infer_vertical

FINTECH = infer_vertical("Fintech", "")


def _ctx(**kwargs) -> ReportContext:
    kwargs.setdefault("headline", "Acme: Competitive Landscape (FINTECH)")
    kwargs.setdefault("profile", FINTECH)
    return ReportContext(**kwargs)


def test_headline_uses_vertical_key():
    proj = Project(name="Acme")
    assert report_headline(proj, infer_vertical("Developer tools", "")) == "Acme: Competitive Landscape (DEVTOOLS)"


def test_empty_context_renders_placeholders():
    body = render_markdown(_ctx())
    assert body.startswith("# Acme: Competitive Landscape (FINTECH)\n")
    assert "_No competitors identified in this analysis._" in body
    assert "_No pricing information found in the analyzed sources._" in body
    assert "- PCI-DSS: Not found" in body
    assert "## Sources" not in body
    assert body.endswith("\n") and not body.endswith("\n\n")


def test_citations_and_sources_appendix():
    sources = {
        1: Source(id=1, url="https://stripe.com/pricing", title="Stripe Pricing"),
        2: Source(id=2, url="https://chargebee.com/", title=None),
    }
    findings = [
        ReportFinding("COMMON_FEATURE", 'API: "webhooks" appears across 2 sources', [1, 2]),
        ReportFinding("INSIGHT", "Market landscape: 2 competitors", [99]),
    ]
    body = render_markdown(_ctx(findings=findings, sources=sources))

    assert 'API: "webhooks" appears across 2 sources [S1][S2]' in body
    assert "- Market landscape: 2 competitors\n" in body
    assert "## Sources" in body
    assert "- [S1] [Stripe Pricing](https://stripe.com/pricing)" in body
    assert "- [S2] [chargebee.com](https://chargebee.com/)" in body
    assert "[S99]" not in body


def test_pricing_and_compliance_sections():
    stripe = Competitor(id=1, name="Stripe", website="https://stripe.com")
    ctx = _ctx(
        competitors=[stripe],
        pricing=[
            PricingPoint(competitor_id=1, plan_name="Pro", price_monthly=20.0, price_annual=240.0, currency="USD"),
            PricingPoint(competitor_id=1, plan_name="Scale", price_monthly=99.5, transaction_fee=2.9, currency="EUR"),
        ],
        capabilities=[Capability(category="API", name="webhooks", normalized="webhooks")],
        compliance=[ComplianceItem(framework="SOC 2", status="Claims", notes="Mentioned at stripe.com/security")],
    )
    body = render_markdown(ctx)

    assert "- **Stripe** - https://stripe.com" in body
    assert "#### Stripe" in body
    assert "- **Pro** $20/mo ($240/yr)" in body
    assert "- **Scale** €99.50/mo + 2.90% transaction fee" in body
    assert "- **Average monthly price**: $59.75" in body
    assert "- SOC 2: Mentioned" in body
    assert "- **Status**: Claims" in body


def test_hyphenated_keywords_match_capability_names():
    caps = [
        Capability(category="Security", name="Self-Hosted", normalized="selfhosted"),
        Capability(category="API", name="Self-serve onboarding", normalized="selfserve onboarding"),
        Capability(category="API", name="webhooks", normalized="webhooks"),
    ]
    body = render_markdown(_ctx(capabilities=caps))

    deployment = body.split("## Deployment & Performance", 1)[1].split("### Performance & SLAs", 1)[0]
    assert "### Deployment Options" in deployment
    assert "- selfhosted" in deployment
    assert "webhooks" not in deployment

    gtm = body.split("## GTM Motions & ICPs", 1)[1]
    assert "### Go-to-Market Indicators" in gtm
    assert "- selfserve onboarding" in gtm
