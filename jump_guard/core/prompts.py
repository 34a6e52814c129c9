"""
Studio form validation and jump prompt construction.
"""

from dataclasses import dataclass

SYSTEM_PROMPT = (
    "You are a helpful AI assistant specialized in creating action plans "
    "and providing practical tools and resources."
)

MIN_FIELD_LENGTH = 10
MAX_FIELD_LENGTH = 2000

NOT_SPECIFIED = "Not specified"


@dataclass(frozen=True)
class StudioForm:
    """What a user submits to request a jump.

    ``goals`` and ``challenges`` are required free text; the remaining
    fields are optional context.
    """
    goals: str
    challenges: str
    industry: str = ""
    ai_knowledge: str = ""
    time_commitment: str = ""
    budget: str = ""

    def __post_init__(self):
        """Validate the required free-text fields."""
        for name in ("goals", "challenges"):
            value = getattr(self, name)
            if not isinstance(value, str):
                raise ValueError(f"{name} must be a string")
            length = len(value.strip())
            if length < MIN_FIELD_LENGTH:
                raise ValueError(f"{name} must be at least {MIN_FIELD_LENGTH} characters")
            if length > MAX_FIELD_LENGTH:
                raise ValueError(f"{name} must be less than {MAX_FIELD_LENGTH} characters")


def _field(value: str) -> str:
    return value.strip() or NOT_SPECIFIED


def build_jump_prompt(form: StudioForm) -> str:
    """Build the user prompt asking the model for a complete jump plan."""
    context = "\n".join([
        f"What they're trying to achieve: {_field(form.goals)}",
        f"What's preventing them: {_field(form.challenges)}",
        f"Industry: {_field(form.industry)}",
        f"AI Experience: {_field(form.ai_knowledge)}",
        f"Urgency: {_field(form.time_commitment)}",
        f"Budget: {_field(form.budget)}",
    ])
    return f"""Deeply analyze this person's situation:

{context}

Create a transformation plan specific to THEIR situation, split into phases
with concrete steps, the AI tools that help at each step, and ready-to-use
prompts for those tools.

Return ONLY valid JSON:
{{
  "jumpName": "3-5 word name reflecting their transformation",
  "executiveSummary": "How you understand their situation and the path forward",
  "phases": [
    {{
      "name": "Phase name",
      "duration": "Fits urgency: {_field(form.time_commitment)}",
      "steps": [
        {{"title": "Step title", "description": "What to do", "tools": ["Tool"], "prompts": ["Prompt"]}}
      ]
    }}
  ],
  "tools": [{{"name": "Tool", "purpose": "Why it helps", "cost": "Fits budget: {_field(form.budget)}"}}],
  "prompts": [{{"title": "Prompt title", "prompt": "Prompt text", "tool": "Tool"}}],
  "successMetrics": ["Metric 1", "Metric 2", "Metric 3"]
}}"""
