"""
Gap catalog: static reference data for the five privacy framework domains.

Holds the domain metadata, the severity tiers with their remediation
timelines, the domain -> remediation tool mapping and the registry of every
tool the product knows about. Everything here is plain data plus pure
lookups.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

DOMAINS = ("govern", "identify", "control", "communicate", "protect")

GAP_STATUSES = ("not_started", "in_progress", "completed")

SEVERITIES = ("critical", "high", "moderate", "low")

GAP_DOMAINS: Dict[str, Dict[str, str]] = {
    "govern": {
        "title": "Govern",
        "description": "Privacy governance, risk management, and policies",
    },
    "identify": {
        "title": "Identify",
        "description": "Data inventory and privacy risk identification",
    },
    "control": {
        "title": "Control",
        "description": "Data processing controls and management",
    },
    "communicate": {
        "title": "Communicate",
        "description": "Stakeholder and data subject communication",
    },
    "protect": {
        "title": "Protect",
        "description": "Technical and organizational safeguards",
    },
}

# Upper score bound (exclusive) for each severity band, checked in order
SEVERITY_BANDS = [
    ("critical", 60),
    ("high", 70),
    ("moderate", 80),
]

GAP_SEVERITY_CONFIG: Dict[str, Dict[str, str]] = {
    "critical": {
        "label": "Critical",
        "timeline": "Immediate",
        "effort": "2-4 weeks",
        "impact": "High risk reduction",
    },
    "high": {
        "label": "High",
        "timeline": "Within 30 days",
        "effort": "4-6 weeks",
        "impact": "Medium risk reduction",
    },
    "moderate": {
        "label": "Moderate",
        "timeline": "Within 90 days",
        "effort": "6-8 weeks",
        "impact": "Low risk reduction",
    },
    "low": {
        "label": "Low",
        "timeline": "Ongoing maintenance",
        "effort": "6-8 weeks",
        "impact": "Low risk reduction",
    },
}

DOMAIN_TOOL_MAPPINGS: Dict[str, List[Dict[str, str]]] = {
    "govern": [
        {
            "tool_id": "privacy-gap-analyzer",
            "tool_name": "Privacy Gap Analyzer",
            "tool_path": "/toolkit/privacy-gap-analyzer",
            "solves_gap": "Identifies governance gaps and creates action plan",
            "estimated_time": "30 min",
        },
        {
            "tool_id": "privacy-policy-generator",
            "tool_name": "Privacy Policy Generator",
            "tool_path": "/toolkit/privacy-policy-generator",
            "solves_gap": "Creates compliant privacy policies",
            "estimated_time": "15 min",
        },
    ],
    "identify": [
        {
            "tool_id": "gdpr-mapper",
            "tool_name": "GDPR Data Mapper",
            "tool_path": "/toolkit/gdpr-mapper",
            "solves_gap": "Creates Article 30 processing records",
            "estimated_time": "25 min",
        },
        {
            "tool_id": "pii-data-flow-mapper",
            "tool_name": "PII Data Flow Mapper",
            "tool_path": "/toolkit/pii-data-flow-mapper",
            "solves_gap": "Maps data flows and transfers",
            "estimated_time": "30 min",
        },
        {
            "tool_id": "vendor-risk-assessment",
            "tool_name": "Vendor Risk Assessment",
            "tool_path": "/toolkit/vendor-risk-assessment",
            "solves_gap": "Assesses third-party privacy risks",
            "estimated_time": "25 min",
        },
    ],
    "control": [
        {
            "tool_id": "consent-management",
            "tool_name": "Consent Management",
            "tool_path": "/toolkit/consent-management",
            "solves_gap": "Tracks consent and preferences",
            "estimated_time": "20 min",
        },
        {
            "tool_id": "privacy-rights-manager",
            "tool_name": "Privacy Rights Manager",
            "tool_path": "/toolkit/privacy-rights-manager",
            "solves_gap": "Manages DSAR requests",
            "estimated_time": "30 min",
        },
        {
            "tool_id": "retention-policy-generator",
            "tool_name": "Retention Policy Generator",
            "tool_path": "/toolkit/retention-policy-generator",
            "solves_gap": "Creates data retention schedules",
            "estimated_time": "20 min",
        },
    ],
    "communicate": [
        {
            "tool_id": "privacy-policy-generator",
            "tool_name": "Privacy Notice Generator",
            "tool_path": "/toolkit/privacy-policy-generator",
            "solves_gap": "Creates transparent privacy notices",
            "estimated_time": "15 min",
        },
        {
            "tool_id": "dpia-generator",
            "tool_name": "DPIA Generator",
            "tool_path": "/toolkit/dpia-generator",
            "solves_gap": "Documents impact assessments",
            "estimated_time": "20 min",
        },
    ],
    "protect": [
        {
            "tool_id": "privacy-settings-audit",
            "tool_name": "Privacy Settings Audit",
            "tool_path": "/toolkit/privacy-settings-audit",
            "solves_gap": "Reviews system privacy configurations",
            "estimated_time": "30 min",
        },
        {
            "tool_id": "privacy-by-design-assessment",
            "tool_name": "Privacy by Design Assessment",
            "tool_path": "/toolkit/privacy-by-design-assessment",
            "solves_gap": "Evaluates privacy in system design",
            "estimated_time": "30 min",
        },
        {
            "tool_id": "incident-response-manager",
            "tool_name": "Incident Response Manager",
            "tool_path": "/toolkit/incident-response-manager",
            "solves_gap": "Manages breach response",
            "estimated_time": "25 min",
        },
    ],
}

# Every tool the product hosts. Some have no domain mapping and are tracked
# for usage only.
TOOL_METADATA: Dict[str, Dict[str, str]] = {
    "gdpr-mapper": {"name": "GDPR Mapper", "category": "core"},
    "privacy-rights-manager": {"name": "Privacy Rights Manager", "category": "core"},
    "dpia-generator": {"name": "DPIA Generator", "category": "core"},
    "dpia-manager": {"name": "DPIA Manager", "category": "core"},
    "incident-response-manager": {"name": "Incident Response Manager", "category": "core"},
    "privacy-assessment": {"name": "Privacy Assessment", "category": "supporting"},
    "privacy-gap-analyzer": {"name": "Privacy Gap Analyzer", "category": "supporting"},
    "vendor-risk-assessment": {"name": "Vendor Risk Assessment", "category": "supporting"},
    "service-provider-manager": {"name": "Service Provider Manager", "category": "supporting"},
    "data-flow-mapper": {"name": "Data Flow Mapper", "category": "supporting"},
    "retention-policy-generator": {"name": "Retention Policy Generator", "category": "supporting"},
    "privacy-by-design-assessment": {"name": "Privacy by Design Assessment", "category": "supporting"},
    "privacy-settings-audit": {"name": "Privacy Settings Audit", "category": "supporting"},
    "data-classification": {"name": "Data Classification", "category": "classification"},
    "consent-management": {"name": "Consent Management", "category": "phase2"},
    "privacy-policy-generator": {"name": "Privacy Policy Generator", "category": "phase2"},
    "pii-data-flow-mapper": {"name": "PII Data Flow Mapper", "category": "phase2"},
}


def normalize_domain(title: Any) -> Optional[str]:
    """Map an assessment section title to a domain key (case-insensitive)."""
    if not isinstance(title, str):
        return None
    key = title.strip().lower()
    return key if key in GAP_DOMAINS else None


def is_known_tool(tool_id: str) -> bool:
    return tool_id in TOOL_METADATA


def get_tools_for_gap(domain: str) -> List[Dict[str, str]]:
    return list(DOMAIN_TOOL_MAPPINGS.get(domain, []))


def get_tool_ids_for_domain(domain: str) -> List[str]:
    return [t["tool_id"] for t in DOMAIN_TOOL_MAPPINGS.get(domain, [])]


def get_tool_domain(tool_id: str) -> Optional[str]:
    """Return the first domain whose tool list contains ``tool_id``.

    ``privacy-policy-generator`` is listed under both govern and communicate;
    the catalog order makes it resolve to govern.
    """
    for domain, tools in DOMAIN_TOOL_MAPPINGS.items():
        if any(t["tool_id"] == tool_id for t in tools):
            return domain
    return None


def get_next_recommended_tool(domain: str, completed_tool_ids: List[str]) -> Optional[Dict[str, str]]:
    """First tool in the domain's list that has not been completed yet."""
    for tool in DOMAIN_TOOL_MAPPINGS.get(domain, []):
        if tool["tool_id"] not in completed_tool_ids:
            return {
                "tool_id": tool["tool_id"],
                "tool_name": tool["tool_name"],
                "tool_path": tool["tool_path"],
            }
    return None
