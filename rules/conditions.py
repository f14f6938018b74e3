import datetime
import functools
import logging
import re
from typing import Any, List, Optional

from django.utils.dateparse import parse_date, parse_datetime

from .enums import ConditionField, ConditionOperator, ValueType
from .values import Evaluation, EvaluationError


logger = logging.getLogger('rules.conditions')

_DELIMITED_PATTERN = re.compile(r'^([/~#%])(.*)\1([imsuxADJSUX]*)$', re.DOTALL)

_PATTERN_FLAGS = {
    'i': re.IGNORECASE,
    'm': re.MULTILINE,
    's': re.DOTALL,
    'x': re.VERBOSE,
}

MATCH = Evaluation(True)
NO_MATCH = Evaluation(False)


@functools.lru_cache(maxsize=256)
def _compile(pattern: str, flags: int):
    return re.compile(pattern, flags)


def _failure(code: str, message: str) -> Evaluation:
    return Evaluation(False, EvaluationError(code, message))


def _split_list(value) -> List[str]:
    return [part.strip() for part in str(value or '').split(',')]


def _as_text(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    return str(value)


def _as_number(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _as_date(value) -> Optional[datetime.date]:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if value is None:
        return None
    text = str(value).strip()
    try:
        parsed = parse_date(text)
        if parsed is None:
            moment = parse_datetime(text)
            parsed = moment.date() if moment else None
    except ValueError:
        # Well formed but impossible, e.g. 2024-02-30
        return None
    return parsed


class ConditionEvaluator:
    """
    Evaluates a single ``RuleCondition`` against a transaction.

    Field values are resolved once per transaction and cached until the
    transaction is invalidated (after actions changed it). Operators dispatch on
    the field's value type class; incompatible combinations are coerced on a
    best-effort basis. Nothing here raises: a condition that cannot be evaluated
    (unparseable number or date, invalid pattern) is simply not matched.
    """

    def __init__(self):
        self._field_cache = {}
        self._cache_hits = 0
        self._cache_misses = 0

    def evaluate(self, condition, transaction) -> bool:
        return self.check(condition, transaction).matched

    def check(self, condition, transaction) -> Evaluation:
        """Like ``evaluate`` but keeps the reason a condition was malformed."""
        try:
            field = ConditionField(condition.field)
            operator = ConditionOperator(condition.operator)
        except ValueError:
            evaluation = _failure(
                'unknown_condition',
                f"Unknown field or operator: {condition.field!r} {condition.operator!r}"
            )
        else:
            actual = self.get_field_value(transaction, field)
            evaluation = self.evaluate_with_value(
                operator,
                field.value_type,
                actual,
                condition.value,
                bool(condition.is_case_sensitive)
            )

        if evaluation.is_malformed:
            logger.warning(
                "Condition could not be evaluated",
                extra={
                    'condition_id': getattr(condition, 'id', None),
                    'transaction_id': getattr(transaction, 'id', None),
                    'error': evaluation.error.message,
                    'event_type': 'condition_malformed',
                }
            )

        if condition.is_negated:
            return Evaluation(not evaluation.matched, evaluation.error)
        return evaluation

    def evaluate_with_value(
        self,
        operator: ConditionOperator,
        value_type: ValueType,
        actual: Any,
        expected: Any,
        case_sensitive: bool = False
    ) -> Evaluation:
        expected = '' if expected is None else str(expected)

        if operator == ConditionOperator.EQUALS:
            return self._equals(value_type, actual, expected, case_sensitive)
        if operator == ConditionOperator.NOT_EQUALS:
            return self._invert(self._equals(value_type, actual, expected, case_sensitive))
        if operator == ConditionOperator.CONTAINS:
            return self._text_match(actual, expected, case_sensitive, lambda a, e: e in a)
        if operator == ConditionOperator.NOT_CONTAINS:
            return self._invert(self._text_match(actual, expected, case_sensitive, lambda a, e: e in a))
        if operator == ConditionOperator.STARTS_WITH:
            return self._text_match(actual, expected, case_sensitive, lambda a, e: a.startswith(e))
        if operator == ConditionOperator.ENDS_WITH:
            return self._text_match(actual, expected, case_sensitive, lambda a, e: a.endswith(e))
        if operator == ConditionOperator.GREATER_THAN:
            return self._compare(value_type, actual, expected, lambda a, e: a > e)
        if operator == ConditionOperator.GREATER_THAN_OR_EQUAL:
            return self._compare(value_type, actual, expected, lambda a, e: a >= e)
        if operator == ConditionOperator.LESS_THAN:
            return self._compare(value_type, actual, expected, lambda a, e: a < e)
        if operator == ConditionOperator.LESS_THAN_OR_EQUAL:
            return self._compare(value_type, actual, expected, lambda a, e: a <= e)
        if operator == ConditionOperator.REGEX:
            return self._regex(actual, expected, case_sensitive)
        if operator == ConditionOperator.WILDCARD:
            return self._wildcard(actual, expected, case_sensitive)
        if operator == ConditionOperator.IS_EMPTY:
            return Evaluation(self._is_empty(actual))
        if operator == ConditionOperator.IS_NOT_EMPTY:
            return Evaluation(not self._is_empty(actual))
        if operator == ConditionOperator.IN:
            return self._in(value_type, actual, expected, case_sensitive)
        if operator == ConditionOperator.NOT_IN:
            return self._invert(self._in(value_type, actual, expected, case_sensitive))
        if operator == ConditionOperator.BETWEEN:
            return self._between(value_type, actual, expected)

        return _failure('unknown_operator', f"Unsupported operator: {operator!r}")

    def get_field_value(self, transaction, field: ConditionField):
        cache_key = (transaction.pk, field) if transaction.pk is not None else None

        if cache_key is not None and cache_key in self._field_cache:
            self._cache_hits += 1
            return self._field_cache[cache_key]

        self._cache_misses += 1
        value = self._resolve(transaction, field)

        if cache_key is not None:
            self._field_cache[cache_key] = value
        return value

    def invalidate(self, transaction):
        """Forget cached field values of a transaction whose fields changed."""
        for key in [key for key in self._field_cache if key[0] == transaction.pk]:
            del self._field_cache[key]

    def clear_cache(self):
        self._field_cache = {}
        return self

    def cache_stats(self):
        lookups = self._cache_hits + self._cache_misses
        return {
            'hits': self._cache_hits,
            'misses': self._cache_misses,
            'hit_ratio': self._cache_hits / lookups if lookups else 1.0,
            'cached_values': len(self._field_cache),
        }

    def _resolve(self, transaction, field: ConditionField):
        if field == ConditionField.CATEGORY:
            return transaction.category.name if transaction.category_id else None
        if field == ConditionField.MERCHANT:
            return transaction.merchant.name if transaction.merchant_id else None
        if field == ConditionField.ACCOUNT:
            return transaction.account.name if transaction.account_id else None
        if field == ConditionField.DATE:
            return transaction.booked_date
        if field == ConditionField.TAGS:
            if transaction.pk is None:
                return []
            return [tag.name for tag in transaction.tags.all()]
        return getattr(transaction, field.value, None)

    # Operators

    def _invert(self, evaluation: Evaluation) -> Evaluation:
        if evaluation.is_malformed:
            return evaluation
        return Evaluation(not evaluation.matched)

    def _fold(self, text: str, case_sensitive: bool) -> str:
        return text if case_sensitive else text.casefold()

    def _any_text(self, actual, predicate) -> bool:
        """Apply ``predicate`` to a scalar, or to each item of a tag list."""
        if isinstance(actual, (list, tuple, set)):
            return any(predicate(_as_text(item)) for item in actual)
        return predicate(_as_text(actual))

    def _equals(self, value_type, actual, expected, case_sensitive) -> Evaluation:
        if actual is None:
            return Evaluation(expected == '')

        if value_type == ValueType.NUMERIC:
            left, right = _as_number(actual), _as_number(expected)
            if left is not None and right is not None:
                return Evaluation(left == right)
        elif value_type == ValueType.DATE:
            left, right = _as_date(actual), _as_date(expected)
            if left is not None and right is not None:
                return Evaluation(left == right)

        wanted = self._fold(expected, case_sensitive)
        return Evaluation(self._any_text(
            actual,
            lambda text: self._fold(text, case_sensitive) == wanted
        ))

    def _text_match(self, actual, expected, case_sensitive, predicate) -> Evaluation:
        if actual is None or expected == '':
            return NO_MATCH

        wanted = self._fold(expected, case_sensitive)
        return Evaluation(self._any_text(
            actual,
            lambda text: predicate(self._fold(text, case_sensitive), wanted)
        ))

    def _ordered_pair(self, value_type, actual, expected):
        """Coerce both sides to dates or floats; ``None`` when impossible."""
        if value_type == ValueType.DATE or isinstance(actual, datetime.date):
            left, right = _as_date(actual), _as_date(expected)
        else:
            left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return None
        return left, right

    def _compare(self, value_type, actual, expected, predicate) -> Evaluation:
        if actual is None:
            return NO_MATCH

        pair = self._ordered_pair(value_type, actual, expected)
        if pair is None:
            return _failure('invalid_comparison', f"Cannot compare {actual!r} with {expected!r}")
        return Evaluation(predicate(*pair))

    def _between(self, value_type, actual, expected) -> Evaluation:
        if actual is None:
            return NO_MATCH

        bounds = _split_list(expected)
        if len(bounds) != 2:
            return _failure('invalid_range', f"Expected 'low,high', got {expected!r}")

        low = self._ordered_pair(value_type, actual, bounds[0])
        high = self._ordered_pair(value_type, actual, bounds[1])
        if low is None or high is None:
            return _failure('invalid_range', f"Cannot compare {actual!r} with range {expected!r}")

        value, minimum = low
        _, maximum = high
        return Evaluation(minimum <= value <= maximum)

    def _regex(self, actual, expected, case_sensitive) -> Evaluation:
        if actual is None or expected == '':
            return NO_MATCH

        delimited = _DELIMITED_PATTERN.match(expected)
        if delimited:
            pattern, modifiers = delimited.group(2), delimited.group(3)
            flags = 0
            for modifier in modifiers:
                flags |= _PATTERN_FLAGS.get(modifier, 0)
        else:
            pattern = expected
            flags = 0 if case_sensitive else re.IGNORECASE

        try:
            compiled = _compile(pattern, flags)
        except re.error as e:
            return _failure('invalid_regex', f"Invalid pattern {expected!r}: {e}")

        return Evaluation(self._any_text(actual, lambda text: compiled.search(text) is not None))

    def _wildcard(self, actual, expected, case_sensitive) -> Evaluation:
        if actual is None or expected == '':
            return NO_MATCH

        translated = ''.join(
            '.*' if char == '*' else '.' if char == '?' else re.escape(char)
            for char in expected
        )
        flags = re.DOTALL if case_sensitive else re.DOTALL | re.IGNORECASE
        compiled = _compile(translated, flags)

        return Evaluation(self._any_text(actual, lambda text: compiled.fullmatch(text) is not None))

    def _is_empty(self, actual) -> bool:
        if actual is None:
            return True
        if isinstance(actual, (list, tuple, set)):
            return len(actual) == 0
        return _as_text(actual).strip() == ''

    def _in(self, value_type, actual, expected, case_sensitive) -> Evaluation:
        if actual is None:
            return NO_MATCH

        candidates = _split_list(expected)

        if value_type == ValueType.NUMERIC:
            number = _as_number(actual)
            numbers = [_as_number(candidate) for candidate in candidates]
            if number is not None and None not in numbers:
                return Evaluation(number in numbers)

        wanted = {self._fold(candidate, case_sensitive) for candidate in candidates}
        return Evaluation(self._any_text(
            actual,
            lambda text: self._fold(text, case_sensitive) in wanted
        ))
