"""Prompt templates for screenshot batch analysis."""

from typing import Optional

from awbatch.analysis.context import ActivityContext, context_label

PROMPT_REV = "screenshot-batch-observer/v1"

ANALYSIS_PROMPT = """
You are analysing a chronological sequence of screenshots from the user's computer.
The images are attached in capture order and are indexed from 0.
Describe what the user is doing as a chronological list of observations.
For each observation give the first and last screenshot index it covers.
No preamble, no markdown.

Return a single JSON object:
{
  "observations": [
    { "start_index": 0, "end_index": 2, "text": "User is editing code in VS Code" }
  ]
}
Respond with JSON only.
""".strip()


def build_analysis_prompt(context: Optional[ActivityContext] = None) -> str:
    """Analysis prompt, with the batch's activity context appended when known."""
    if context is None:
        return ANALYSIS_PROMPT
    info = f"Current App: {context.app}"
    label = context_label(context)
    if label != context.app:
        info += f"\nActivity: {label} ({context.activity_type})"
    return f"{ANALYSIS_PROMPT}\n\nContext Information:\n{info}"
