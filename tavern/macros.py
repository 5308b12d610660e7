"""``{{macro}}`` substitution for user- and character-authored text.

Deliberately small: a fixed table of names, each mapped to a string or to a
zero-argument callable evaluated on first use. Unknown macros are left in
place. There are no conditionals, loops or arguments beyond the comment
form ``{{// ...}}``.
"""

import logging
import re
from datetime import datetime
from typing import Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)

MacroValue = Union[str, Callable[[], str]]

_MACRO_RE = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")
_COMMENT_RE = re.compile(r"\{\{//[\s\S]*?\}\}")
_TRIM_RE = re.compile(r"(?:\r?\n)*\{\{trim\}\}(?:\r?\n)*", re.IGNORECASE)
_LEGACY = {"<USER>": "user", "<BOT>": "char", "<CHAR>": "char", "<CHARIFNOTGROUP>": "charIfNotGroup", "<GROUP>": "group"}


def _clock_macros(now: Callable[[], datetime]) -> Dict[str, MacroValue]:
    return {
        "time": lambda: now().strftime("%I:%M %p").lstrip("0"),
        "date": lambda: now().strftime("%B %d, %Y").replace(" 0", " "),
        "weekday": lambda: now().strftime("%A"),
        "isotime": lambda: now().strftime("%H:%M"),
        "isodate": lambda: now().strftime("%Y-%m-%d"),
    }


class MacroEngine:
    """Substitutes macros from an environment of names to values.

    Lookups are case-insensitive. Callable values are evaluated at most
    once per engine instance.
    """

    def __init__(
        self,
        env: Optional[Dict[str, MacroValue]] = None,
        *,
        now: Callable[[], datetime] = datetime.now,
    ):
        self._env: Dict[str, MacroValue] = {}
        self._resolved: Dict[str, str] = {}
        self.update(_clock_macros(now))
        self.update({"newline": "\n", "noop": ""})
        if env:
            self.update(env)

    def update(self, env: Dict[str, MacroValue]) -> None:
        for name, value in env.items():
            key = name.lower()
            self._env[key] = value
            self._resolved.pop(key, None)

    def value(self, name: str) -> Optional[str]:
        key = name.lower()
        if key in self._resolved:
            return self._resolved[key]
        if key not in self._env:
            return None
        raw = self._env[key]
        resolved = raw() if callable(raw) else raw
        resolved = "" if resolved is None else str(resolved)
        self._resolved[key] = resolved
        return resolved

    def substitute(self, text: Optional[str]) -> str:
        if not text:
            return ""

        for legacy, name in _LEGACY.items():
            if legacy in text:
                text = text.replace(legacy, self.value(name) or "")

        text = _COMMENT_RE.sub("", text)

        def _replace(match: "re.Match[str]") -> str:
            name = match.group(1)
            if name.lower() == "trim":
                return match.group(0)
            value = self.value(name)
            return match.group(0) if value is None else value

        text = _MACRO_RE.sub(_replace, text)
        return _TRIM_RE.sub("", text)


def build_macro_engine(
    *,
    user: str,
    char: str,
    group: str = "",
    extra: Optional[Dict[str, MacroValue]] = None,
    now: Callable[[], datetime] = datetime.now,
) -> MacroEngine:
    """Engine with the identity macros filled in."""
    env: Dict[str, MacroValue] = {
        "user": user,
        "char": char,
        "group": group or char,
        "charIfNotGroup": group or char,
    }
    if extra:
        env.update(extra)
    return MacroEngine(env, now=now)
