import enum

from django.db import models


class TriggerType(models.TextChoices):
    TRANSACTION_CREATED = 'transaction_created', 'Transaction created'
    TRANSACTION_UPDATED = 'transaction_updated', 'Transaction updated'
    MANUAL = 'manual', 'Manual'


class LogicOperator(models.TextChoices):
    AND = 'AND', 'All conditions (AND)'
    OR = 'OR', 'Any condition (OR)'


class ValueType(enum.Enum):
    """Type class a condition field resolves to."""

    STRING = 'string'
    NUMERIC = 'numeric'
    DATE = 'date'
    RELATION = 'relation'
    TAG_SET = 'tag_set'


class ConditionField(models.TextChoices):
    AMOUNT = 'amount', 'Amount'
    DESCRIPTION = 'description', 'Description'
    PARTNER = 'partner', 'Partner'
    CATEGORY = 'category', 'Category'
    MERCHANT = 'merchant', 'Merchant'
    ACCOUNT = 'account', 'Account'
    TYPE = 'type', 'Type'
    NOTE = 'note', 'Note'
    RECIPIENT_NOTE = 'recipient_note', 'Recipient note'
    PLACE = 'place', 'Place'
    TARGET_IBAN = 'target_iban', 'Target IBAN'
    SOURCE_IBAN = 'source_iban', 'Source IBAN'
    DATE = 'date', 'Booked date'
    TAGS = 'tags', 'Tags'

    @property
    def value_type(self):
        return FIELD_VALUE_TYPES[self]


class ConditionOperator(models.TextChoices):
    EQUALS = 'equals', 'Equals'
    NOT_EQUALS = 'not_equals', 'Does not equal'
    CONTAINS = 'contains', 'Contains'
    NOT_CONTAINS = 'not_contains', 'Does not contain'
    STARTS_WITH = 'starts_with', 'Starts with'
    ENDS_WITH = 'ends_with', 'Ends with'
    GREATER_THAN = 'greater_than', 'Greater than'
    GREATER_THAN_OR_EQUAL = 'greater_than_or_equal', 'Greater than or equal'
    LESS_THAN = 'less_than', 'Less than'
    LESS_THAN_OR_EQUAL = 'less_than_or_equal', 'Less than or equal'
    REGEX = 'regex', 'Matches regex'
    WILDCARD = 'wildcard', 'Matches wildcard'
    IS_EMPTY = 'is_empty', 'Is empty'
    IS_NOT_EMPTY = 'is_not_empty', 'Is not empty'
    IN = 'in', 'In list'
    NOT_IN = 'not_in', 'Not in list'
    BETWEEN = 'between', 'Between'

    def accepts(self, value_type):
        return value_type in OPERATOR_VALUE_TYPES[self]


FIELD_VALUE_TYPES = {
    ConditionField.AMOUNT: ValueType.NUMERIC,
    ConditionField.DESCRIPTION: ValueType.STRING,
    ConditionField.PARTNER: ValueType.STRING,
    ConditionField.CATEGORY: ValueType.RELATION,
    ConditionField.MERCHANT: ValueType.RELATION,
    ConditionField.ACCOUNT: ValueType.RELATION,
    ConditionField.TYPE: ValueType.STRING,
    ConditionField.NOTE: ValueType.STRING,
    ConditionField.RECIPIENT_NOTE: ValueType.STRING,
    ConditionField.PLACE: ValueType.STRING,
    ConditionField.TARGET_IBAN: ValueType.STRING,
    ConditionField.SOURCE_IBAN: ValueType.STRING,
    ConditionField.DATE: ValueType.DATE,
    ConditionField.TAGS: ValueType.TAG_SET,
}

_TEXTUAL = frozenset({ValueType.STRING, ValueType.RELATION, ValueType.TAG_SET})
_ORDERED = frozenset({ValueType.NUMERIC, ValueType.DATE})
_ANY = frozenset(ValueType)

OPERATOR_VALUE_TYPES = {
    ConditionOperator.EQUALS: _ANY,
    ConditionOperator.NOT_EQUALS: _ANY,
    ConditionOperator.CONTAINS: _TEXTUAL,
    ConditionOperator.NOT_CONTAINS: _TEXTUAL,
    ConditionOperator.STARTS_WITH: _TEXTUAL,
    ConditionOperator.ENDS_WITH: _TEXTUAL,
    ConditionOperator.GREATER_THAN: _ORDERED,
    ConditionOperator.GREATER_THAN_OR_EQUAL: _ORDERED,
    ConditionOperator.LESS_THAN: _ORDERED,
    ConditionOperator.LESS_THAN_OR_EQUAL: _ORDERED,
    ConditionOperator.REGEX: _TEXTUAL,
    ConditionOperator.WILDCARD: _TEXTUAL,
    ConditionOperator.IS_EMPTY: _ANY,
    ConditionOperator.IS_NOT_EMPTY: _ANY,
    ConditionOperator.IN: _ANY,
    ConditionOperator.NOT_IN: _ANY,
    ConditionOperator.BETWEEN: _ORDERED,
}


class ActionFamily(enum.Enum):
    ID_BASED = 'id_based'
    STRING_BASED = 'string_based'
    VALUELESS = 'valueless'


class ActionType(models.TextChoices):
    SET_CATEGORY = 'set_category', 'Set category'
    SET_MERCHANT = 'set_merchant', 'Set merchant'
    ADD_TAG = 'add_tag', 'Add tag'
    REMOVE_TAG = 'remove_tag', 'Remove tag'
    REMOVE_ALL_TAGS = 'remove_all_tags', 'Remove all tags'
    SET_DESCRIPTION = 'set_description', 'Set description'
    APPEND_DESCRIPTION = 'append_description', 'Append to description'
    PREPEND_DESCRIPTION = 'prepend_description', 'Prepend to description'
    SET_NOTE = 'set_note', 'Set note'
    APPEND_NOTE = 'append_note', 'Append to note'
    SET_TYPE = 'set_type', 'Set type'
    MARK_RECONCILED = 'mark_reconciled', 'Mark as reconciled'
    SEND_NOTIFICATION = 'send_notification', 'Send notification'
    CREATE_TAG_IF_NOT_EXISTS = 'create_tag_if_not_exists', 'Create tag if not exists'
    CREATE_CATEGORY_IF_NOT_EXISTS = 'create_category_if_not_exists', 'Create category if not exists'
    CREATE_MERCHANT_IF_NOT_EXISTS = 'create_merchant_if_not_exists', 'Create merchant if not exists'

    @property
    def family(self):
        return ACTION_FAMILIES[self]


ACTION_FAMILIES = {
    ActionType.SET_CATEGORY: ActionFamily.ID_BASED,
    ActionType.SET_MERCHANT: ActionFamily.ID_BASED,
    ActionType.ADD_TAG: ActionFamily.ID_BASED,
    ActionType.REMOVE_TAG: ActionFamily.ID_BASED,
    ActionType.REMOVE_ALL_TAGS: ActionFamily.VALUELESS,
    ActionType.SET_DESCRIPTION: ActionFamily.STRING_BASED,
    ActionType.APPEND_DESCRIPTION: ActionFamily.STRING_BASED,
    ActionType.PREPEND_DESCRIPTION: ActionFamily.STRING_BASED,
    ActionType.SET_NOTE: ActionFamily.STRING_BASED,
    ActionType.APPEND_NOTE: ActionFamily.STRING_BASED,
    ActionType.SET_TYPE: ActionFamily.STRING_BASED,
    ActionType.MARK_RECONCILED: ActionFamily.VALUELESS,
    # The message is optional, so notifications are treated as valueless
    ActionType.SEND_NOTIFICATION: ActionFamily.VALUELESS,
    ActionType.CREATE_TAG_IF_NOT_EXISTS: ActionFamily.STRING_BASED,
    ActionType.CREATE_CATEGORY_IF_NOT_EXISTS: ActionFamily.STRING_BASED,
    ActionType.CREATE_MERCHANT_IF_NOT_EXISTS: ActionFamily.STRING_BASED,
}
