"""
Value objects shared by the evaluator, the executor and the models.

``ActionValue`` is the sum type stored on a ``RuleAction``: an ``Identifier``
for id-based actions, a ``Text`` for string-based actions and ``None`` for
valueless ones. Which variant applies is decided when the action is written.
"""
import json
from dataclasses import dataclass
from typing import Optional, Union

from .enums import ActionFamily, ActionType
from .exceptions import RuleDefinitionError


@dataclass(frozen=True)
class Identifier:
    id: int

    def __str__(self):
        return str(self.id)


@dataclass(frozen=True)
class Text:
    text: str

    def __str__(self):
        return self.text


ActionValue = Optional[Union[Identifier, Text]]


@dataclass(frozen=True)
class EvaluationError:
    """Why a condition could not be evaluated (bad number, date or pattern)."""

    code: str
    message: str


@dataclass(frozen=True)
class Evaluation:
    matched: bool
    error: Optional[EvaluationError] = None

    @property
    def is_malformed(self):
        return self.error is not None


def decode_raw_value(raw):
    """Unwrap JSON encoded scalars; anything else passes through unchanged."""
    if not isinstance(raw, str) or raw == '':
        return raw
    try:
        decoded = json.loads(raw)
    except (ValueError, TypeError):
        return raw
    if isinstance(decoded, str):
        return decoded
    if isinstance(decoded, int) and not isinstance(decoded, bool):
        return decoded
    return raw


def _as_identifier(raw):
    if isinstance(raw, Identifier):
        return raw
    value = decode_raw_value(raw)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return Identifier(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
        return Identifier(number) if number > 0 else None
    return None


def _as_text(raw):
    if isinstance(raw, Text):
        return raw
    value = decode_raw_value(raw)
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(raw)
    if isinstance(value, str) and value != '':
        return Text(value)
    return None


def coerce_action_value(action_type, raw) -> ActionValue:
    """
    Turn user input into the ``ActionValue`` variant for ``action_type``.

    Raises:
        RuleDefinitionError: if the value does not fit the action's family
    """
    action_type = ActionType(action_type)
    family = action_type.family

    if family is ActionFamily.ID_BASED:
        value = _as_identifier(raw)
        if value is None:
            raise RuleDefinitionError(
                f"Action '{action_type.value}' requires a positive numeric identifier, got {raw!r}"
            )
        return value

    if family is ActionFamily.STRING_BASED:
        value = _as_text(raw)
        if value is None:
            raise RuleDefinitionError(
                f"Action '{action_type.value}' requires a non-empty text value"
            )
        return value

    # Valueless actions keep an optional message (used by send_notification)
    if raw is None or raw == '':
        return None
    return _as_text(raw)


def encode_action_value(value: ActionValue) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def read_action_value(action_type, stored) -> ActionValue:
    """Rebuild the ``ActionValue`` of an already stored action without raising."""
    try:
        family = ActionType(action_type).family
    except ValueError:
        return None
    if stored is None or stored == '':
        return None
    if family is ActionFamily.ID_BASED:
        stored = str(stored).strip()
        return Identifier(int(stored)) if stored.isdigit() and int(stored) > 0 else None
    return Text(str(stored))
