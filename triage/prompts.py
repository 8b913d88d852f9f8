"""
Prompt builders for every generation call.

Plain functions returning one string each, so tests can assert on the exact
instructions without a model server. Issue text is collapsed onto one line
before it is embedded in a prompt; citizen input must not be able to open a new
instruction block with its own line breaks.
"""

from __future__ import annotations

import datetime
from typing import Iterable, Optional

from triage.models import CATEGORY_VALUES, SEVERITY_VALUES, Issue

DECLINE_PHRASE = "I do not have enough information to answer that."
NO_SIMILAR_ISSUES = "No similar issues found."
NO_RELEVANT_ISSUES = "No relevant issues found."

_STATUS_PHRASES = {
    "new": "under review",
    "in_progress": "being addressed by the relevant department",
    "resolved": "marked as resolved",
}


def _one_line(value: Optional[str]) -> str:
    return " ".join((value or "").split())


def _quoted_options(values: Iterable[str]) -> str:
    return ", ".join(f'"{v}"' for v in values)


def format_classification_context(similar: Iterable) -> str:
    lines = [
        f"- Title: {_one_line(m.issue.title)}, Description: {_one_line(m.issue.description)}"
        for m in similar
    ]
    return "\n".join(lines) or NO_SIMILAR_ISSUES


def prepare_classification_prompt(issue: Issue, similar: Iterable) -> str:
    context = format_classification_context(similar)
    return (
        "You are an expert civic issue classifier for Nagpur, India. "
        "Analyze the issue and its historical context.\n\n"
        "**New Issue:**\n"
        f'- Title: "{_one_line(issue.title)}"\n'
        f'- Description: "{_one_line(issue.description)}"\n\n'
        "**Historical Context (Similar Past Issues):**\n"
        f"{context}\n\n"
        "**Your Tasks:**\n"
        f'1. Determine the "category". Options: {_quoted_options(CATEGORY_VALUES)}.\n'
        f'2. Determine the "severity". Options: {_quoted_options(SEVERITY_VALUES)}.\n'
        '3. Provide a brief "explanation" (1-2 sentences) for your classification, '
        "referencing the context if relevant.\n\n"
        "Respond ONLY with a valid JSON object in the format: "
        '{"category": "...", "severity": "...", "explanation": "..."}'
    )


def format_chat_context_line(issue: Issue, now: datetime.datetime) -> str:
    created = issue.created_at
    reported = created.date().isoformat() if created else "N/A"
    age = f"{max(0, (now - created).days)} days" if created else "N/A"
    return (
        f"- Issue (ID {issue.id}): {_one_line(issue.title)} "
        f"(Status: {issue.status or 'N/A'}, Severity: {issue.severity or 'N/A'}, "
        f"Reported: {reported}, Age: {age})"
    )


def prepare_chat_prompt(question: str, context_lines: list[str]) -> str:
    context = "\n".join(context_lines) or NO_RELEVANT_ISSUES
    return (
        "You are a professional and helpful AI assistant for a Nagpur Municipal Corporation officer.\n\n"
        "**Your first rule is to be conversational:** If the user's question is a simple greeting "
        'or small talk (like "Hi", "Hello", "How are you?", "Thanks"), respond politely '
        "without using the context.\n\n"
        "**Your second rule is to answer questions using context:** For all other questions, "
        "you must answer *only* based on the provided context of relevant civic issues.\n"
        "- If the context is sufficient, answer the question and cite issue IDs.\n"
        f'- If the context is empty or insufficient, say exactly "{DECLINE_PHRASE}"\n'
        "- Never invent issues, IDs, dates or locations.\n\n"
        "**Context (Relevant Issues):**\n"
        f"{context}\n\n"
        "**Officer's Question:**\n"
        f"{question.strip()}\n\n"
        "**Answer:**"
    )


def prepare_escalation_prompt(issue: Issue, threshold_hours: float) -> str:
    hours = int(threshold_hours) if float(threshold_hours).is_integer() else threshold_hours
    return (
        "You are a senior analyst at the Nagpur Municipal Corporation (NMC).\n"
        f"A high-priority civic issue has not been addressed for over {hours} hours.\n"
        "Draft a formal and urgent escalation email to the head of the relevant department.\n\n"
        "The email must:\n"
        "1. Clearly state the issue ID, title, and category.\n"
        f"2. Emphasize the '{issue.severity}' severity.\n"
        f"3. Note that it has been pending for over {hours} hours.\n"
        "4. Request an immediate status update and action.\n\n"
        "Issue Details:\n"
        f"- ID: {issue.id}\n"
        f'- Title: "{_one_line(issue.title)}"\n'
        f'- Category: "{issue.category or "Unclassified"}"\n'
        f'- Severity: "{issue.severity}"\n'
        f'- Description: "{_one_line(issue.description)}"\n\n'
        'Respond ONLY with a valid JSON object in the format: {"subject": "...", "body": "..."}'
    )


def format_summary_listing(issues: Iterable[Issue]) -> str:
    return "\n".join(
        f"- {_one_line(i.title)} (Category: {i.category or 'Unclassified'}, "
        f"Severity: {i.severity or 'Unrated'}, Status: {i.status})"
        for i in issues
    )


def prepare_weekly_summary_prompt(issues: list[Issue], window_days: int) -> str:
    return (
        "You are an analyst for the Nagpur Municipal Corporation.\n"
        f"Analyze the following list of raw complaints from the past {window_days} days and generate "
        'a concise "Weekly Issue Bulletin" for a ward officer.\n\n'
        "The bulletin should include:\n"
        f'1. A brief overview (e.g., "A total of {len(issues)} issues were reported...").\n'
        '2. A section on "Key Hotspots" or "Emerging Trends" '
        "(e.g., \"Multiple 'Sewage' complaints in the Sitabuldi area.\").\n"
        "3. A \"Priority Issues\" list for any 'High' or 'Critical' severity items.\n\n"
        "Here is the raw data:\n"
        f"{format_summary_listing(issues)}"
    )


def prepare_action_plan_prompt(issue: Issue) -> str:
    return (
        "You are an operations manager for the Nagpur Municipal Corporation.\n"
        "An officer needs an immediate, short, actionable checklist for a field team to "
        "address the following issue.\n"
        "Respond ONLY with a numbered list of 3-5 brief, practical steps. "
        "Do not add any conversational text before or after the list.\n\n"
        "Issue Details:\n"
        f'- Title: "{_one_line(issue.title)}"\n'
        f'- Description: "{_one_line(issue.description)}"\n'
        f'- Category: "{issue.category or "Unclassified"}"\n'
        f'- Severity: "{issue.severity or "Unrated"}"\n\n'
        "Example Response:\n"
        "1. Deploy safety cones and warning signs around the area.\n"
        "2. Assess the structural integrity and size of the pothole.\n"
        "3. Clear any water or debris from the hole.\n"
        "4. Fill with cold patch asphalt and compact the surface."
    )


def prepare_reply_prompt(issue: Issue) -> str:
    category = issue.category or "civic"
    status_phrase = _STATUS_PHRASES.get(issue.status, "under review")
    return (
        "You are an experienced administrative assistant at the Nagpur Municipal Corporation (NMC).\n"
        "Draft a formal, polite, and concise reply regarding the following civic issue.\n"
        "The reply should acknowledge the issue and briefly state its current status.\n"
        "Maintain a professional tone suitable for official NMC communication.\n"
        'Do not add greetings like "Dear Citizen" or sign-offs. Respond only with the body of the reply.\n\n'
        "**Issue Details:**\n"
        f'- Title: "{_one_line(issue.title)}"\n'
        f'- Category: "{category}"\n'
        f'- Severity: "{issue.severity or "Unrated"}"\n'
        f'- Current Status: "{issue.status}"\n\n'
        "**Example Reply:**\n"
        f"\"We acknowledge receipt of your report regarding the {category.lower()} issue titled "
        f"'{_one_line(issue.title)}'. The matter is currently {status_phrase}. "
        'Thank you for bringing this to our attention."'
    )
