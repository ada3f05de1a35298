"""
Prompt construction for the investigation loop.

Every prompt asks for a single JSON object so the response can be validated
against a strict schema in ``parsing``.
"""

import json
from typing import Optional, Sequence

from .budget import InvestigationContext
from .safety import SAFE_OPERATIONS

SYSTEM_PROMPT = """You are a Kubernetes troubleshooting engineer. You investigate operational issues in a live cluster by requesting read-only data, then explain the root cause and propose a remediation plan.

Rules:
- You can only read cluster state. Allowed operations: get, describe, logs, events, top, explain.
- Prefer narrow requests: a specific resource, a namespace, a label selector, a log tail.
- Every remediation command must be a single kubectl command. No pipes, redirects, command chaining or shell syntax.
- Never target a different cluster, context or user.
- Respond with exactly one JSON object and nothing else."""

INVESTIGATION_SCHEMA = """{
  "analysis": "what the evidence so far shows",
  "dataRequests": [
    {
      "operationType": "get | describe | logs | events | top | explain",
      "resource": "pods, deployment/api, pod/api-7d9f, nodes, ...",
      "namespace": "optional namespace",
      "args": ["optional flags, e.g. -l app=api, --tail=200, --previous, -o yaml"],
      "rationale": "why this data helps"
    }
  ],
  "investigationComplete": false,
  "confidence": 0.0,
  "reasoning": "why you need more data or why you are done",
  "needsMoreSpecificInfo": false
}"""

FINAL_ANALYSIS_SCHEMA = """{
  "rootCause": "the underlying cause",
  "confidence": 0.0,
  "factors": ["supporting evidence"],
  "issueStatus": "active | resolved | nonexistent",
  "remediation": {
    "summary": "what the plan does",
    "actions": [
      {
        "description": "what this step does",
        "command": "kubectl ...",
        "risk": "low | medium | high",
        "rationale": "why this step fixes the cause",
        "fullResourceDefinition": "optional manifest piped to the command on stdin"
      }
    ],
    "risk": "low | medium | high"
  },
  "validationIntent": "optional: what to check after the plan runs"
}"""


def _json(value) -> str:
    return json.dumps(value, indent=2, default=str)


def _evidence_section(context: InvestigationContext) -> str:
    parts = []
    if context.reset:
        parts.append(
            "Earlier evidence was condensed to fit the context window. "
            "Re-request anything you still need."
        )
    if context.summary:
        parts.append("Findings from earlier iterations:\n" + "\n".join(f"- {s}" for s in context.summary))
    if context.recent:
        parts.append("Recent iterations:\n" + _json(list(context.recent)))
    if not parts:
        return "No data gathered yet."
    return "\n\n".join(parts)


def _rejections(context: InvestigationContext) -> list[str]:
    lines = []
    for view in context.recent[-1:]:
        for result in (view.get("gatheredData") or {}).values():
            if result.get("status") == "rejected":
                lines.append(f"- {result.get('command')}: {result.get('error')}")
    return lines


def build_investigation_prompt(
    context: InvestigationContext,
    step: int,
    max_iterations: int,
    api_resources: Optional[str] = None,
    validation_feedback: Sequence[str] = (),
    seed_commands: Sequence[str] = (),
) -> str:
    """Prompt for one investigation step."""
    sections = [
        f"Session: {context.session_id}",
        f"Issue: {context.issue}",
        f"Initial context:\n{_json(context.initial_context)}",
    ]
    if seed_commands:
        sections.append(
            "These remediation commands were executed. Verify whether the issue is now resolved:\n"
            + "\n".join(f"- {c}" for c in seed_commands)
        )
    sections.append(f"Iteration {step} of {max_iterations}.")
    sections.append(_evidence_section(context))

    rejected = _rejections(context)
    if rejected:
        sections.append(
            "Your previous requests were refused. Do not repeat them:\n" + "\n".join(rejected)
        )
    if validation_feedback:
        sections.append(
            "Your previous remediation plan failed server-side validation. "
            "Investigate further and correct it:\n"
            + "\n".join(f"- {f}" for f in validation_feedback)
        )
    if api_resources:
        sections.append(f"Cluster API resources:\n{api_resources}")

    sections.append(
        f"Allowed operations: {', '.join(sorted(SAFE_OPERATIONS))}.\n"
        "Set investigationComplete to true once the evidence explains the issue, or "
        "once it shows the issue is resolved or never existed. If the issue text is too "
        "vague to locate any resource, set needsMoreSpecificInfo to true.\n"
        f"Respond with JSON in this shape:\n{INVESTIGATION_SCHEMA}"
    )
    return "\n\n".join(sections)


def build_final_analysis_prompt(
    context: InvestigationContext,
    iterations: int,
    seed_commands: Sequence[str] = (),
) -> str:
    """Prompt for the converged root-cause analysis and plan."""
    sections = [
        f"Session: {context.session_id}",
        f"Issue: {context.issue}",
        f"Initial context:\n{_json(context.initial_context)}",
        f"The investigation finished after {iterations} iterations.",
        _evidence_section(context),
    ]
    if seed_commands:
        sections.append(
            "Commands already executed for this issue:\n"
            + "\n".join(f"- {c}" for c in seed_commands)
            + "\nIf the evidence shows the issue is fixed, set issueStatus to resolved "
            "and propose no actions."
        )
    sections.append(
        "Produce the final analysis. Order the actions as they must run. Each command must "
        "be a single kubectl invocation. Rate each action's risk honestly: anything that "
        "deletes data, restarts many workloads or changes cluster-wide settings is high.\n"
        f"Respond with JSON in this shape:\n{FINAL_ANALYSIS_SCHEMA}"
    )
    return "\n\n".join(sections)


def correction_hint(error: str) -> str:
    """Appended to a prompt after a malformed response."""
    return (
        "\n\nYour previous response could not be used: "
        f"{error}\nRespond again with exactly one valid JSON object matching the shape above."
    )
