from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from models.schemas import ConversationEntry, MessageRole, ScriptStep

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
SCHEDULING_RE = re.compile(r"agend|calend|consult|reuni[aã]o|hor[aá]rio|schedul|calendar|appointment|meeting", re.IGNORECASE)

NAME_QUESTION_RE = re.compile(r"nome completo|seu nome|full name|your name", re.IGNORECASE)
ORIGIN_QUESTION_RE = re.compile(r"como (nos )?conheceu|como nos encontrou|how did you (find|hear)|where did you hear", re.IGNORECASE)
URGENCY_RE = re.compile(r"\burgen|\bas soon as possible\b|\basap\b|\bprazo\b|\bdeadline\b|\bhoje\b|\btoday\b", re.IGNORECASE)

LEGAL_AREAS = [
    ("labor", re.compile(r"trabalh|demiss|demitid|rescis|horas? extras?|fired|dismiss|overtime|employ|labor", re.IGNORECASE)),
    ("family", re.compile(r"div[oó]rc|pens[aã]o aliment|guarda|custody|alimony|divorce|family", re.IGNORECASE)),
    ("social_security", re.compile(r"\binss\b|aposentad|benef[ií]cio|retire|pension|social security", re.IGNORECASE)),
    ("consumer", re.compile(r"consumidor|cobran[cç]a indevida|produto|consumer|refund|overcharg", re.IGNORECASE)),
    ("criminal", re.compile(r"criminal|crime|pris[aã]o|pol[ií]cia|arrest|police", re.IGNORECASE)),
]

STEP_FIELD_HINTS = [
    ("name", re.compile(r"\bnome\b|\bname\b", re.IGNORECASE)),
    ("email", re.compile(r"e-?mail", re.IGNORECASE)),
    ("origin", ORIGIN_QUESTION_RE),
    ("legal_area", re.compile(r"[aá]rea|tipo de (caso|problema)|area of law|kind of (case|issue)", re.IGNORECASE)),
]


def personalize(template: str, name: str) -> str:
    return (template or "").replace("{name}", name or "")


def _looks_like_name(text: str) -> bool:
    words = text.strip().split()
    return 2 <= len(words) <= 6 and all(re.fullmatch(r"[^\W\d_][^\W\d_'.-]*", w) for w in words)


def extract_collected_data(history: List[ConversationEntry]) -> Dict[str, str]:
    """Facts the client already gave, read from answers that follow assistant questions."""
    collected: Dict[str, str] = {}
    last_question = ""
    client_text: List[str] = []
    for entry in history:
        if entry.role == MessageRole.ASSISTANT:
            last_question = entry.content
            continue
        text = entry.content.strip()
        client_text.append(text)
        email = EMAIL_RE.search(text)
        if email:
            collected["email"] = email.group(0)
        if last_question and NAME_QUESTION_RE.search(last_question) and _looks_like_name(text):
            collected["name"] = text
        if last_question and ORIGIN_QUESTION_RE.search(last_question) and text:
            collected["origin"] = text[:120]
    joined = "\n".join(client_text)
    for area, pattern in LEGAL_AREAS:
        if pattern.search(joined):
            collected["legal_area"] = area
            break
    if URGENCY_RE.search(joined):
        collected["urgency"] = "high"
    return collected


def step_already_collected(step: ScriptStep, collected: Dict[str, object]) -> bool:
    text = f"{step.situation} {step.message_to_send}"
    for field_name, pattern in STEP_FIELD_HINTS:
        if collected.get(field_name) and pattern.search(text):
            return True
    return False


def is_scheduling_agent(steps: List[ScriptStep]) -> bool:
    return any(SCHEDULING_RE.search(f"{s.situation} {s.message_to_send}") for s in steps)


@dataclass
class ScriptState:
    steps: List[ScriptStep] = field(default_factory=list)
    current_step: Optional[ScriptStep] = None
    next_step: Optional[ScriptStep] = None
    skipped: List[ScriptStep] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.current_step is None and bool(self.steps)

    @property
    def active(self) -> bool:
        return self.current_step is not None


def resolve_script_state(steps: List[ScriptStep], current_step_id: Optional[str]) -> ScriptState:
    current = next((s for s in steps if s.id == current_step_id), None)
    if current is None:
        return ScriptState(steps=steps)
    index = steps.index(current)
    nxt = steps[index + 1] if index + 1 < len(steps) else None
    return ScriptState(steps=steps, current_step=current, next_step=nxt)


def auto_advance(state: ScriptState, collected: Dict[str, object]) -> ScriptState:
    """Skip upcoming steps whose information is already known."""
    if state.next_step is None:
        return state
    index = state.steps.index(state.next_step)
    skipped: List[ScriptStep] = []
    while index < len(state.steps) and step_already_collected(state.steps[index], collected):
        skipped.append(state.steps[index])
        index += 1
    if not skipped:
        return state
    nxt = state.steps[index] if index < len(state.steps) else None
    return ScriptState(steps=state.steps, current_step=state.current_step, next_step=nxt, skipped=skipped)


def script_guidance(state: ScriptState, client_name: str) -> str:
    if not state.steps:
        return "There is no script for this agent. Conduct the conversation following the rules above."
    if state.completed:
        return (
            "SCRIPT STATUS: the scripted sequence is COMPLETED. Do not restart it. "
            "Answer the client naturally, using the collected information."
        )
    lines = [f"SCRIPT STATUS: step {state.steps.index(state.current_step) + 1} of {len(state.steps)}."]
    lines.append(f"Current step ({state.current_step.situation}): {personalize(state.current_step.message_to_send, client_name)}")
    if state.skipped:
        lines.append("Already answered, do not ask again: " + "; ".join(s.situation or s.message_to_send for s in state.skipped))
    if state.next_step is not None:
        lines.append(
            f"Next step ({state.next_step.situation}): {personalize(state.next_step.message_to_send, client_name)}\n"
            "If the client answered the current step, use action PROCEED: the system then sends the next "
            "step's message exactly as written. If the answer is missing or unclear, use STAY and ask again."
        )
    else:
        lines.append(
            "This is the LAST step. When the client answers it, use action PROCEED, thank them "
            "and say their case will be forwarded."
        )
    return "\n".join(lines)
