"""System instruction assembly for the text-completion channel."""
from __future__ import annotations

from typing import List, Optional

DEFAULT_PERSONA = (
    "You are a patient, encouraging tutor. Explain one idea at a time, check "
    "understanding with short questions, and keep answers concise. Write "
    "formulas in LaTeX."
)


def build_system_instruction(
    persona: Optional[str] = None,
    *,
    learner: Optional[str] = None,
    module: Optional[str] = None,
) -> str:
    """Persona template followed by the learner profile and module, when given."""
    sys_lines: List[str] = [(persona or DEFAULT_PERSONA).strip()]

    learner = (learner or "").strip()
    if learner:
        sys_lines.append("Learner profile:")
        sys_lines.append(learner)

    module = (module or "").strip()
    if module:
        sys_lines.append("Current module:")
        sys_lines.append(module)
        sys_lines.append("Stay within the scope of this module unless the learner asks otherwise.")

    return "\n".join(sys_lines)
