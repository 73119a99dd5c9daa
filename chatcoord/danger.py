"""
Shell command danger classification.

A command line is tokenized into sub-commands (chains, pipes, background
jobs and command substitutions), and each sub-command is matched against
a set of destructive-operation rules. A command is dangerous if any of
its sub-commands is.
"""

import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)


class _State(Enum):
    UNQUOTED = "unquoted"
    SINGLE = "single_quoted"
    DOUBLE = "double_quoted"
    ESCAPED = "escaped"


DANGEROUS_RULES: List[Tuple[str, Pattern]] = [
    ("git push", re.compile(r"^git\s+(?:-C\s+\S+\s+)?push\b")),
    ("git checkout", re.compile(r"^git\s+(?:-C\s+\S+\s+)?checkout\b")),
    ("git reset", re.compile(r"^git\s+(?:-C\s+\S+\s+)?reset\b")),
    ("git rebase", re.compile(r"^git\s+(?:-C\s+\S+\s+)?rebase\b")),
    ("git merge", re.compile(r"^git\s+(?:-C\s+\S+\s+)?merge\b")),
    ("container stop", re.compile(r"^(?:podman|docker)\s+stop\b")),
    ("container rm", re.compile(r"^(?:podman|docker)\s+rm\b")),
    ("container restart", re.compile(r"^(?:podman|docker)\s+restart\b")),
    ("rm", re.compile(r"^rm\s+")),
    ("del", re.compile(r"^del\s+", re.IGNORECASE)),
    ("taskkill", re.compile(r"^taskkill\s+", re.IGNORECASE)),
]

_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=\S*\s+")
_WRAPPERS = ("sudo ", "command ", "exec ", "nohup ", "time ")


@dataclass
class DangerMatch:
    sub_command: str
    rule: str


@dataclass
class CommandAssessment:
    command: str
    sub_commands: List[str] = field(default_factory=list)
    matches: List[DangerMatch] = field(default_factory=list)

    @property
    def dangerous(self) -> bool:
        return bool(self.matches)


class _Tokenizer:
    """Single pass over a command line tracking quoting state."""

    def __init__(self, line: str):
        self.line = line
        self.pos = 0
        self.commands: List[str] = []
        self.substitutions: List[str] = []
        self.current: List[str] = []
        self.state = _State.UNQUOTED
        self.escaped_from = _State.UNQUOTED

    def _peek(self, offset: int = 1) -> str:
        index = self.pos + offset
        return self.line[index] if 0 <= index < len(self.line) else ""

    def _flush(self):
        text = "".join(self.current).strip()
        if text:
            self.commands.append(text)
        self.current = []

    def _read_substitution(self) -> str:
        """Consume ``$( ... )`` starting at ``$``; return the inner text."""
        depth = 0
        start = self.pos + 2
        index = start
        quote: Optional[str] = None
        while index < len(self.line):
            char = self.line[index]
            if quote:
                if char == "\\" and quote == '"':
                    index += 1
                elif char == quote:
                    quote = None
            elif char in ("'", '"'):
                quote = char
            elif char == "\\":
                index += 1
            elif char == "(":
                depth += 1
            elif char == ")":
                if depth == 0:
                    self.pos = index
                    return self.line[start:index]
                depth -= 1
            index += 1
        self.pos = len(self.line) - 1
        return self.line[start:]

    def _read_backticks(self) -> str:
        """Consume a backtick substitution; return the inner text."""
        start = self.pos + 1
        index = start
        while index < len(self.line):
            char = self.line[index]
            if char == "\\":
                index += 2
                continue
            if char == "`":
                self.pos = index
                return self.line[start:index]
            index += 1
        self.pos = len(self.line) - 1
        return self.line[start:]

    def _substitute(self, inner: str):
        self.substitutions.extend(split_commands(inner))

    def run(self) -> List[str]:
        while self.pos < len(self.line):
            char = self.line[self.pos]

            if self.state == _State.ESCAPED:
                self.current.append(char)
                self.state = self.escaped_from

            elif self.state == _State.SINGLE:
                if char == "'":
                    self.state = _State.UNQUOTED
                else:
                    self.current.append(char)

            elif self.state == _State.DOUBLE:
                if char == '"':
                    self.state = _State.UNQUOTED
                elif char == "\\":
                    self.escaped_from = _State.DOUBLE
                    self.state = _State.ESCAPED
                elif char == "$" and self._peek() == "(":
                    self._substitute(self._read_substitution())
                elif char == "`":
                    self._substitute(self._read_backticks())
                else:
                    self.current.append(char)

            else:
                if char == "\\":
                    self.escaped_from = _State.UNQUOTED
                    self.state = _State.ESCAPED
                elif char == "'":
                    self.state = _State.SINGLE
                elif char == '"':
                    self.state = _State.DOUBLE
                elif char == "$" and self._peek() == "(":
                    self._substitute(self._read_substitution())
                elif char == "`":
                    self._substitute(self._read_backticks())
                elif char == "&" and (self._peek(-1) in ("<", ">") or self._peek() == ">"):
                    # redirection such as 2>&1 or &>file
                    self.current.append(char)
                elif char in (";", "\n"):
                    self._flush()
                elif char in ("&", "|"):
                    if self._peek() == char:
                        self.pos += 1
                    self._flush()
                else:
                    self.current.append(char)

            self.pos += 1

        self._flush()
        return self.commands + self.substitutions


def split_commands(line: str) -> List[str]:
    """
    Split a shell command line into sub-commands.

    Separators are ``;``, ``&&``, ``||``, ``|``, ``&`` and newlines outside
    quotes. The bodies of ``$(...)`` and backtick substitutions are split
    recursively and appended after the top-level commands. Quotes and
    escapes are removed from the returned text.
    """
    return _Tokenizer(line or "").run()


def _normalize(sub_command: str) -> str:
    text = sub_command.strip()
    changed = True
    while changed:
        changed = False
        match = _ASSIGNMENT.match(text)
        if match:
            text = text[match.end():]
            changed = True
        for wrapper in _WRAPPERS:
            if text.startswith(wrapper):
                text = text[len(wrapper):].lstrip()
                changed = True
    return text


def classify_command(command: str) -> CommandAssessment:
    """Classify every sub-command of ``command`` against the danger rules."""
    assessment = CommandAssessment(command=command, sub_commands=split_commands(command))
    for sub_command in assessment.sub_commands:
        normalized = _normalize(sub_command)
        for rule, pattern in DANGEROUS_RULES:
            if pattern.search(normalized):
                assessment.matches.append(DangerMatch(sub_command, rule))
                break

    if assessment.dangerous:
        rules = ", ".join(m.rule for m in assessment.matches)
        logger.debug(f"Dangerous command ({rules}): {command}")
    return assessment


def is_dangerous(command: str) -> bool:
    return classify_command(command).dangerous
