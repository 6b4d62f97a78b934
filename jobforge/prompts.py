"""Prompt templates and ``{{placeholder}}`` resolution for the classifier."""
from __future__ import annotations

import re

from jobforge.config import ProfileTexts
from jobforge.models import JobRecord, PreferenceProfile

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

BASIC_FILTER_TEMPLATE = """You are a job filtering assistant. Review this job listing against the candidate's profile and determine if it's worth their attention.

CANDIDATE PROFILE:
{{biography}}

CANDIDATE PREFERENCES:
- Preferred Locations: {{target_locations}}
- Work Mode: {{remote_preference}}
- Travel Willingness: {{travel_willingness}}
- Salary Range: {{min_salary}} - {{max_salary}} {{currency}}
- Career Level: {{career_level}}
- Tech Stack: {{tech_stack}}
- Company Size: {{company_size}}

JOB LISTING:
Title: {{job_title}}
Company: {{company}}
Location: {{location}}
Salary: {{salary_range}}
Description: {{job_description}}
URL: {{job_url}}

CRITERIA TO EVALUATE:
- Location compatibility with preferred locations
- Work mode alignment (remote/hybrid/onsite)
- Travel requirements vs. willingness
- Salary expectations (if mentioned)
- Career level match
- Technology stack alignment
- Company size preference

INSTRUCTIONS:
1. Rate this job as: REJECT, MAYBE, or APPROVE
2. Provide brief reasoning (1-2 sentences)
3. If APPROVE, list the top 3 reasons why it's a good match

OUTPUT FORMAT:
Rating: [REJECT/MAYBE/APPROVE]
Reasoning: [Brief explanation]
Top Matches: [If APPROVE, list 3 key reasons]"""

DETAILED_ANALYSIS_TEMPLATE = """You are a senior career advisor. Provide a detailed analysis of this job opportunity for a candidate.

CANDIDATE CV:
{{cv}}

JOB DETAILS:
Title: {{job_title}}
Company: {{company}}
Location: {{location}}
Full Description: {{job_description}}
URL: {{job_url}}

ANALYSIS REQUIREMENTS:
1. Why This Job is Worth Reviewing: Explain the specific opportunities and benefits
2. Technical Challenges: Identify the main technical challenges and learning opportunities
3. Career Growth Potential: Assess how this role could advance their career
4. Company Assessment: Evaluate the company's stability, culture, and reputation
5. Potential Red Flags: Note any concerns or areas requiring investigation
6. Application Strategy: Suggest how to approach the application process"""


def render(template: str, variables: dict[str, str]) -> str:
    """Substitute every ``{{name}}``; missing or empty values become ``[name not provided]``."""

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        value = variables.get(name)
        if value is None or not str(value).strip():
            return f"[{name} not provided]"
        return str(value)

    return _PLACEHOLDER.sub(_sub, template)


def build_variables(
    job: JobRecord,
    preferences: PreferenceProfile,
    texts: ProfileTexts | None = None,
) -> dict[str, str]:
    texts = texts or ProfileTexts()
    min_salary, max_salary = preferences.salary_bounds()
    return {
        "job_title": job.title,
        "company": job.company,
        "location": job.location or "",
        "job_description": job.description,
        "requirements": "",
        "salary_range": job.salary_range or "",
        "source": job.source_name,
        "job_url": job.source_url,
        "target_locations": ", ".join(preferences.preferred_locations),
        "target_job_titles": job.title,
        "remote_preference": ", ".join(preferences.work_mode),
        "min_salary": min_salary,
        "max_salary": max_salary,
        "currency": preferences.currency,
        "career_level": ", ".join(preferences.career_level),
        "tech_stack": ", ".join(preferences.tech_stack),
        "company_size": ", ".join(preferences.company_size),
        "travel_willingness": preferences.travel_willingness.value,
        "biography": texts.biography,
        "cv": texts.cv,
    }
