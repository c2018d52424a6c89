"""
Known-good catalog for the discovery flow: use-case groups, the use cases
in each group and a small bank of discovery questions per use case.

Resolution steps always fall back to this catalog, so the flow can
progress with no retrieval backend and no model configured.
"""
from __future__ import annotations

from typing import Optional

USE_CASE_CATALOG: dict[str, list[str]] = {
    "Customer Experience": [
        "Self-service support assistant",
        "Agent assist for contact centers",
        "Customer feedback analysis",
    ],
    "Operations": [
        "Invoice and document processing",
        "Demand forecasting",
        "Field service scheduling",
    ],
    "Sales and Marketing": [
        "Lead scoring and routing",
        "Personalized campaign content",
        "Account research briefs",
    ],
    "Risk and Compliance": [
        "Policy and contract review",
        "Fraud signal triage",
        "Regulatory change monitoring",
    ],
}

QUESTION_BANK: dict[str, list[str]] = {
    "Self-service support assistant": [
        "Which customer questions take up most of your team's time today?",
        "Where does the knowledge your agents rely on live right now?",
        "How would you measure a successful self-service rollout?",
    ],
    "Agent assist for contact centers": [
        "What slows agents down most during a live interaction?",
        "Which systems do agents switch between on a typical call?",
        "How do you currently review call quality?",
    ],
    "Invoice and document processing": [
        "Roughly how many documents does the team process each month?",
        "Which fields or checks cause the most rework?",
        "Which system should receive the extracted data?",
    ],
    "Lead scoring and routing": [
        "How are inbound leads qualified and assigned today?",
        "Which signals best predict a lead that converts?",
        "Where do leads most often stall in the pipeline?",
    ],
    "Policy and contract review": [
        "Which contract types take the longest to review?",
        "What clauses or risks do reviewers look for first?",
        "Who signs off before a contract is approved?",
    ],
}

GENERIC_QUESTIONS: list[str] = [
    "What does the process look like today, step by step?",
    "Where do delays or errors show up most often?",
    "What result would make this worth the investment within your timeframe?",
]


def use_case_groups(configured: Optional[list[str]] = None) -> list[str]:
    return list(configured) if configured else list(USE_CASE_CATALOG)


def use_cases_for(groups: list[str]) -> list[str]:
    """Use cases belonging to the given groups, in catalog order, without duplicates."""
    out: list[str] = []
    for group in groups:
        for name in USE_CASE_CATALOG.get(group, []):
            if name not in out:
                out.append(name)
    return out


def questions_for(use_case: Optional[str], limit: int = 3) -> list[str]:
    bank = QUESTION_BANK.get(use_case or "", [])
    return (bank + [q for q in GENERIC_QUESTIONS if q not in bank])[:limit]
