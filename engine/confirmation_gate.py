from __future__ import annotations

from dataclasses import dataclass

CONFIRM_PROMPT = "Run these tasks? (yes to run / no to cancel)"
CANCELLED_NOTICE = "Task execution cancelled."
CLARIFY_NOTICE = "Please answer yes to run the tasks or no to cancel."


@dataclass
class GateDecision:
    action: str
    reply: str = ""


class ConfirmationGate:
    def interpret(self, answer: str) -> GateDecision:
        normalized = (answer or "").strip().lower()
        if normalized == "yes":
            return GateDecision(action="execute")
        if normalized == "no":
            return GateDecision(action="cancel", reply=CANCELLED_NOTICE)
        return GateDecision(action="clarify", reply=CLARIFY_NOTICE)
