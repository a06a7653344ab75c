"""Heuristic detection of interactive prompts in terminal output."""

import re
from typing import Optional

from .models import PromptType

# Prompts sit at the bottom of the output
TAIL_LINES = 5

# Characters a prompt line typically ends with
PROMPT_END_CHARS = frozenset("?:>])")

# Bracketed yes/no forms, matched before the regexes (compared lowercased)
YES_NO_LITERALS = ("[y/n]", "(y/n)", "[yes/no]", "(yes/no)")

# Patterns that indicate an agent is waiting for an answer, checked in order
PROMPT_PATTERNS = [
    # Yes/No phrasing
    r'yes or no',
    r'\(y\)es',
    # Confirmation phrasing
    r'Proceed\?',
    r'Continue\?',
    r'Are you sure',
    r'Do you want to',
    r'Would you like to',
    r'Confirm\?',
    r'Overwrite\?',
    r'Delete\?',
    r'Remove\?',
    r'Replace\?',
    # Permission phrasing
    r'Allow .+\?',
    r'Allow this action',
    r'Grant permission',
    r'Permission required',
    r'Approve( this|\?)',
    r'Run command\?',
    # Acknowledgement phrasing
    r'Press enter',
    r'Press any key',
    r'Hit enter',
    r'Type .+ to confirm',
]

# Acknowledgement prompts conventionally end without punctuation
ACKNOWLEDGE_PATTERNS = [
    r'press enter',
    r'press any key',
    r'hit enter',
]

_prompt_res = [re.compile(p, re.IGNORECASE) for p in PROMPT_PATTERNS]
_acknowledge_re = re.compile('|'.join(ACKNOWLEDGE_PATTERNS), re.IGNORECASE)

# Classification keywords, first matching category wins
CLASSIFY_KEYWORDS = [
    (PromptType.YES_NO, ("[y/n]", "(y/n)", "yes or no", "yes/no")),
    (PromptType.CONFIRMATION, ("proceed", "continue?", "are you sure", "confirm")),
    (PromptType.ENTER_TO_CONTINUE, ("press enter", "press any key", "hit enter")),
]


def _tail(text: str, lines: int = TAIL_LINES) -> str:
    return "\n".join(text.splitlines()[-lines:])


class PromptDetector:
    """
    Stateless prompt classifier.

    Holds no mutable state, so a single instance can be shared by every
    session and called from any thread.
    """

    def looks_interactive(self, text: str) -> bool:
        """
        Decide whether the output ends in a prompt awaiting input.

        Args:
            text: Recent normalized output (only the last few lines are used)

        Returns:
            True if the agent appears blocked on an interactive prompt
        """
        tail = _tail(text).strip()
        if not tail:
            return False

        if tail[-1] not in PROMPT_END_CHARS:
            last_line = tail.splitlines()[-1]
            return bool(_acknowledge_re.search(last_line))

        lowered = tail.lower()
        if any(literal in lowered for literal in YES_NO_LITERALS):
            return True

        return any(pattern.search(tail) for pattern in _prompt_res)

    def classify(self, text: str) -> PromptType:
        """Categorize the expected response; freeform when nothing matches."""
        lowered = text.lower()
        for prompt_type, keywords in CLASSIFY_KEYWORDS:
            if any(keyword in lowered for keyword in keywords):
                return prompt_type
        return PromptType.FREEFORM

    def detect(self, text: str) -> Optional[PromptType]:
        """Classify the text if it looks interactive, else None."""
        if not self.looks_interactive(text):
            return None
        return self.classify(_tail(text))
