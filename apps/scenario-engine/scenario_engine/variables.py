"""Variable store and `{{token}}` substitution."""

from __future__ import annotations

import random
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Mapping, Optional

import structlog

from .expressions import (
    UNDEFINED,
    ExpressionError,
    environment_bindings,
    evaluate,
    standard_bindings,
    to_string,
)

LOGGER = structlog.get_logger("scenario_engine")

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
JS_PREFIX = "js:"


def _epoch_ms() -> int:
    return int(time.time() * 1000)


DYNAMIC_TOKENS: dict[str, Callable[[], str]] = {
    "$timestamp": lambda: str(_epoch_ms()),
    "$randomInt": lambda: str(random.randint(0, 9999)),
    "$randomId": lambda: str(_epoch_ms() + random.randint(0, 999)),
    "$dateTime": lambda: datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S"),
    "$date": lambda: datetime.now(timezone.utc).strftime("%Y%m%d"),
    "$time": lambda: datetime.now().strftime("%H%M%S"),
    "$uuid": lambda: str(uuid.uuid4()),
}


class VariableStore:
    """Name to string map shared by the steps of one scenario run."""

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self._values: dict[str, str] = {}
        self._logger = LOGGER.bind(component="variables")
        for key, value in (initial or {}).items():
            self.set(key, value)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(name, default)

    def set(self, name: str, value: Any) -> None:
        self._values[name] = value if isinstance(value, str) else to_string(value)

    def update(self, values: Mapping[str, Any]) -> None:
        for key, value in values.items():
            self.set(key, value)

    def snapshot(self) -> dict[str, str]:
        return dict(self._values)

    def substitute(self, text: Any, local: Optional[Mapping[str, str]] = None) -> Any:
        """Resolve every `{{token}}` in `text`.

        Resolution order: builtin dynamic tokens, `js:` expressions, step-local
        values, stored values. Unresolvable tokens are left untouched.
        """

        if not isinstance(text, str) or "{{" not in text:
            return text
        local = local or {}

        def replace(match: re.Match[str]) -> str:
            token = match.group(1).strip()
            resolved = self._resolve(token, local)
            if resolved is None:
                self._logger.debug("placeholder_unresolved", token=token)
                return match.group(0)
            return resolved

        return PLACEHOLDER_PATTERN.sub(replace, text)

    def substitute_mapping(
        self,
        values: Mapping[str, Any],
        local: Optional[Mapping[str, str]] = None,
    ) -> dict[str, Any]:
        return {key: self.substitute(value, local) for key, value in values.items()}

    def _resolve(self, token: str, local: Mapping[str, str]) -> Optional[str]:
        if token in DYNAMIC_TOKENS:
            return DYNAMIC_TOKENS[token]()
        if token.startswith(JS_PREFIX):
            return self._evaluate_js(token[len(JS_PREFIX):].strip())
        if token in local:
            return local[token]
        return self._values.get(token)

    def _evaluate_js(self, source: str) -> Optional[str]:
        now = datetime.now()
        bindings = standard_bindings()
        bindings.update(
            {
                "timestamp": float(_epoch_ms()),
                "randomInt": float(random.randint(0, 9999)),
                "date": now.strftime("%Y%m%d"),
                "time": now.strftime("%H%M%S"),
                "env": environment_bindings(),
                "variables": self.snapshot(),
            }
        )
        try:
            result = evaluate(source, bindings)
        except (ExpressionError, ArithmeticError, TypeError, ValueError, RecursionError) as exc:
            self._logger.warning("js_expression_failed", expression=source, error=str(exc))
            return None
        if result is UNDEFINED:
            self._logger.warning("js_expression_undefined", expression=source)
            return None
        return to_string(result)
