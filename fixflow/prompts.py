"""Default prompt builders for each workflow step."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Optional, Protocol

from .contracts import StepName, Subject

SECURITY_SYSTEM_PROMPT = """You are a security-focused code remediation assistant.

Your role is to analyze security vulnerabilities and implement secure fixes following industry best practices.

Core principles:
1. NEVER trust user input - always validate and sanitize
2. Use parameterized queries for all database operations
3. Implement proper input validation at all entry points
4. Encode output based on context (HTML, JavaScript, SQL, URL, etc.)
5. Follow the principle of least privilege
6. Use secure cryptographic practices

When fixing vulnerabilities:
- Preserve existing functionality while adding security
- Don't introduce new security issues
- Consider edge cases and bypass attempts
- Add appropriate error handling without leaking sensitive info

IMPORTANT: Return your response as valid JSON matching the requested schema."""

# Steps whose prompt needs the stored result of an earlier step.
STEP_DEPENDENCIES: Dict[StepName, StepName] = {
    StepName.TEST: StepName.FIX,
    StepName.DOCUMENT: StepName.FIX,
}

_FIX_RESULT_SHAPE = {
    "success": True,
    "vulnerability_analysis": {
        "root_cause": "Description of the root cause",
        "attack_vector": "How the vulnerability can be exploited",
        "impact_assessment": "Potential impact if exploited",
    },
    "fix": {
        "file_path": "path/to/file",
        "original_code": "The vulnerable code snippet",
        "fixed_code": "The secure fixed code",
        "explanation": "Why this fix works",
        "security_measures_added": ["measure1", "measure2"],
    },
    "verification_steps": ["Step 1", "Step 2"],
    "additional_recommendations": ["Recommendation 1"],
}

_SCAN_RESULT_SHAPE = {
    "scan_summary": {
        "files_scanned": 50,
        "total_findings": 1,
        "patterns_checked": ["pattern1"],
    },
    "similar_vulnerabilities": [
        {
            "file_path": "src/api/users.py",
            "line_numbers": [42, 45],
            "vulnerability_type": "SQL Injection",
            "risk_level": "high",
            "similarity_score": 0.95,
            "code_snippet": "query = f\"SELECT * FROM users WHERE id = {user_id}\"",
            "recommendation": "Use parameterized queries",
        }
    ],
}


def _json_block(shape: dict) -> list[str]:
    return ["```json", json.dumps(shape, indent=2), "```"]


def _severity(subject: Subject) -> str:
    return subject.severity or "Unknown"


def _fix_section(fix_result: Any) -> Optional[dict]:
    if isinstance(fix_result, dict) and isinstance(fix_result.get("fix"), dict):
        return fix_result["fix"]
    return None


def build_fix_prompt(subject: Subject, additional_context: Optional[str] = None) -> str:
    sections: list[str] = ["# Security Vulnerability Fix Request", ""]

    sections.append("## Vulnerability Details")
    sections.append(f"- **ID**: {subject.id}")
    sections.append(f"- **Title**: {subject.title}")
    sections.append(f"- **Severity**: {_severity(subject).upper()}")
    if subject.type:
        sections.append(f"- **Type**: {subject.type}")
    if subject.cwe_id:
        sections.append(f"- **CWE**: {subject.cwe_id}")
    sections.append("")

    sections.extend(["## Description", subject.description, ""])

    if subject.impact:
        sections.extend(["## Impact", subject.impact, ""])
    if subject.target_url:
        sections.extend(["## Target", f"URL: {subject.target_url}", ""])
    if subject.location:
        sections.append("## Affected Location")
        sections.append(f"File: `{subject.location}`")
        if subject.affected_lines:
            start, end = subject.affected_lines
            sections.append(f"Lines: {start}-{end}")
        sections.append("")
    if subject.evidence:
        sections.extend(["## Proof of Concept / Evidence", "```", subject.evidence, "```", ""])
    if subject.solution_prompt:
        sections.extend(["## Solution Hint", subject.solution_prompt, ""])
    if subject.recommendation:
        sections.extend(["## Recommended Fix", subject.recommendation, ""])
    if additional_context:
        sections.extend(["## Additional Context", additional_context, ""])

    sections.extend(
        [
            "---",
            "",
            "## Task",
            "",
            "1. **Analyze** the vulnerability and identify the root cause",
            "2. **Locate** the vulnerable code in the codebase",
            "3. **Implement** a secure fix that eliminates the vulnerability",
            "4. **Ensure** the fix follows OWASP security best practices",
            "5. **Return** your response as JSON with the following structure:",
            "",
        ]
    )
    sections.extend(_json_block(_FIX_RESULT_SHAPE))
    return "\n".join(sections)


def build_scan_prompt(subject: Subject) -> str:
    description = subject.description
    if len(description) > 300:
        description = description[:300] + "..."

    sections: list[str] = [
        "# Similar Vulnerability Scan Request",
        "",
        "## Original Vulnerability",
        f"- **Type**: {subject.type or 'Unknown'}",
        f"- **Severity**: {_severity(subject)}",
        f"- **Description**: {description}",
    ]
    if subject.location:
        sections.append(f"- **Example Location**: `{subject.location}`")
    if subject.cwe_id:
        sections.append(f"- **CWE ID**: {subject.cwe_id}")
    sections.extend(
        [
            "",
            "## Task",
            "",
            "Perform a security scan of the codebase for vulnerabilities similar to the one above:",
            "",
            "1. **Pattern Matching**: Search for code with the same vulnerable pattern",
            "2. **Context Analysis**: Decide whether each match is exploitable",
            "3. **Anti-Pattern Check**: Exclude matches that already have secure handling nearby",
            "4. **Severity Assessment**: Assign risk levels based on exploitability and impact",
            "",
            "## Output Format",
            "",
            "Return JSON with the following structure:",
        ]
    )
    sections.extend(_json_block(_SCAN_RESULT_SHAPE))
    return "\n".join(sections)


def build_test_prompt(subject: Subject, fix_result: Any = None) -> str:
    sections: list[str] = [
        "# Security Test Generation Request",
        "",
        "## Vulnerability Information",
        f"- **Title**: {subject.title}",
        f"- **Type**: {subject.type or 'Unknown'}",
        f"- **Severity**: {_severity(subject)}",
        "",
        "## Description",
        subject.description,
        "",
    ]

    fix = _fix_section(fix_result)
    if fix:
        sections.extend(
            [
                "## Applied Fix",
                f"File: `{fix.get('file_path', 'unknown')}`",
                "",
                "Fixed code:",
                "```",
                str(fix.get("fixed_code", "")),
                "```",
                "",
            ]
        )

    sections.extend(
        [
            "## Task",
            "",
            "Generate security test cases that:",
            "1. Verify the vulnerability is fixed",
            "2. Test the original attack vector no longer works",
            "3. Test edge cases and bypass attempts",
            "4. Ensure the fix doesn't break normal functionality",
            "",
            "Return JSON with `test_file_path`, `test_framework` and a `test_cases` list where each "
            "entry has `name`, `description`, `test_code`, `expected_behavior` and "
            "`covers_attack_vector`.",
        ]
    )
    return "\n".join(sections)


def build_doc_prompt(subject: Subject, fix_result: Any = None) -> str:
    sections: list[str] = [
        "# Security Documentation Request",
        "",
        "## Vulnerability",
        f"- **Title**: {subject.title}",
        f"- **Severity**: {_severity(subject)}",
        f"- **Type**: {subject.type or 'Unknown'}",
        "",
        "## Description",
        subject.description,
        "",
    ]

    fix = _fix_section(fix_result)
    if fix:
        sections.extend(["## Applied Fix", str(fix.get("explanation", "")), ""])
        measures = fix.get("security_measures_added") or []
        if measures:
            sections.append("Security measures added:")
            sections.extend(f"- {measure}" for measure in measures)
            sections.append("")

    sections.extend(
        [
            "## Task",
            "",
            "Generate documentation including:",
            "1. Clear summary of the vulnerability",
            "2. Summary of the fix applied",
            "3. Technical details for developers",
            "4. Lessons learned",
            "5. Prevention guidelines for future development",
            "6. Relevant references (OWASP, CWE links, etc.)",
            "",
            "Return JSON with `title`, `vulnerability_summary`, `fix_summary`, "
            "`technical_details`, `lessons_learned`, `prevention_guidelines` and `references`.",
        ]
    )
    return "\n".join(sections)


class PromptBuilder(Protocol):
    """Turns a subject (and an earlier step's result) into step instructions."""

    def build(self, step: StepName, subject: Subject, prior_result: Any = None) -> str:
        ...


class DefaultPromptBuilder:
    """Prompt builder backed by the security remediation templates above."""

    def __init__(self) -> None:
        self._builders: Dict[StepName, Callable[[Subject, Any], str]] = {
            StepName.SCAN: lambda subject, _prior: build_scan_prompt(subject),
            StepName.FIX: lambda subject, _prior: build_fix_prompt(subject),
            StepName.TEST: build_test_prompt,
            StepName.DOCUMENT: build_doc_prompt,
        }

    def build(self, step: StepName, subject: Subject, prior_result: Any = None) -> str:
        return self._builders[StepName(step)](subject, prior_result)
