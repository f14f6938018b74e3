import json
from typing import Any, Dict, List

from jsonschema import ValidationError, validate

from .enums import ActionType, ConditionField, ConditionOperator, LogicOperator, TriggerType
from .exceptions import RuleDefinitionError
from .values import coerce_action_value


CONDITION_SCHEMA = {
    'type': 'object',
    'required': ['field', 'operator'],
    'properties': {
        'field': {'enum': list(ConditionField.values)},
        'operator': {'enum': list(ConditionOperator.values)},
        'value': {'type': ['string', 'number', 'null']},
        'is_case_sensitive': {'type': 'boolean'},
        'is_negated': {'type': 'boolean'},
    },
}

CONDITION_GROUP_SCHEMA = {
    'type': 'object',
    'properties': {
        'logic_operator': {'enum': list(LogicOperator.values)},
        'order': {'type': 'integer'},
        'conditions': {'type': 'array', 'items': CONDITION_SCHEMA},
    },
}

ACTION_SCHEMA = {
    'type': 'object',
    'required': ['action_type'],
    'properties': {
        'action_type': {'enum': list(ActionType.values)},
        'value': {'type': ['string', 'integer', 'null']},
        'stop_processing': {'type': 'boolean'},
    },
}

RULE_DEFINITION_SCHEMA = {
    'type': 'object',
    'required': ['name'],
    'properties': {
        'name': {'type': 'string', 'minLength': 1, 'maxLength': 255},
        'description': {'type': 'string'},
        'trigger_type': {'enum': list(TriggerType.values)},
        'order': {'type': 'integer'},
        'is_active': {'type': 'boolean'},
        'stop_processing': {'type': 'boolean'},
        'condition_groups': {'type': 'array', 'items': CONDITION_GROUP_SCHEMA},
        'actions': {'type': 'array', 'items': ACTION_SCHEMA},
    },
}


def validate_rule_definition(definition: Dict[str, Any]) -> bool:
    """
    Validate a rule definition payload before it is stored or previewed.

    Args:
        definition: Rule payload (name, trigger type, condition groups, actions)

    Returns:
        bool: True if valid

    Raises:
        RuleDefinitionError: listing every problem found
    """
    try:
        validate(instance=definition, schema=RULE_DEFINITION_SCHEMA)
    except ValidationError as e:
        location = '.'.join(str(part) for part in e.absolute_path)
        message = f"{location}: {e.message}" if location else e.message
        raise RuleDefinitionError(f"Invalid rule definition: {message}", [message])

    errors = []

    for group_index, group in enumerate(definition.get('condition_groups', [])):
        for index, condition in enumerate(group.get('conditions', [])):
            field = ConditionField(condition['field'])
            operator = ConditionOperator(condition['operator'])
            if not operator.accepts(field.value_type):
                errors.append(
                    f"condition_groups.{group_index}.conditions.{index}: operator "
                    f"'{operator.value}' cannot be used with {field.value_type.value} field '{field.value}'"
                )

    for index, action in enumerate(definition.get('actions', [])):
        try:
            coerce_action_value(action['action_type'], action.get('value'))
        except RuleDefinitionError as e:
            errors.append(f"actions.{index}: {e}")

    if errors:
        raise RuleDefinitionError(f"Invalid rule definition: {'; '.join(errors)}", errors)

    return True


def rule_to_definition(rule) -> Dict[str, Any]:
    """Serialize a stored rule into the payload accepted by ``validate_rule_definition``."""
    return {
        'name': rule.name,
        'description': rule.description,
        'trigger_type': rule.trigger_type,
        'order': rule.order,
        'is_active': rule.is_active,
        'stop_processing': rule.stop_processing,
        'condition_groups': [
            {
                'logic_operator': group.logic_operator,
                'order': group.order,
                'conditions': [
                    {
                        'field': condition.field,
                        'operator': condition.operator,
                        'value': condition.value,
                        'is_case_sensitive': condition.is_case_sensitive,
                        'is_negated': condition.is_negated,
                    }
                    for condition in group.conditions.all()
                ],
            }
            for group in rule.condition_groups.all()
        ],
        'actions': [
            {
                'action_type': action.action_type,
                'value': action.value,
                'stop_processing': action.stop_processing,
            }
            for action in rule.actions.all()
        ],
    }


def export_rules_to_json(user) -> str:
    """
    Export all rule groups and rules of a user to JSON format.

    Id-based action values are exported as they are stored, so they only
    make sense when imported back for the same user.
    """
    from .models import RuleGroup

    groups = (
        RuleGroup.objects
        .filter(user=user)
        .prefetch_related('rules__condition_groups__conditions', 'rules__actions')
        .order_by('order', 'id')
    )

    groups_data = []
    for group in groups:
        groups_data.append({
            'name': group.name,
            'description': group.description,
            'order': group.order,
            'is_active': group.is_active,
            'rules': [rule_to_definition(rule) for rule in group.rules.all()],
        })

    return json.dumps({
        'user_email': user.email,
        'rule_groups': groups_data,
    }, indent=2)


def import_rules_from_json(user, json_data: str) -> Dict[str, Any]:
    """
    Import rule groups and rules from JSON format.

    Groups are matched by name and created when missing; rules are matched by
    name inside their group and replaced. Each rule is imported on its own, so
    one invalid rule does not prevent the others from being imported.

    Returns:
        Dict with import results
    """
    from .models import RuleGroup
    from .services import RuleService

    try:
        data = json.loads(json_data)
    except json.JSONDecodeError as e:
        return {"error": f"Invalid JSON: {e}"}

    groups = data.get('rule_groups')
    if not isinstance(groups, list):
        return {"error": "Missing rule_groups in JSON"}

    service = RuleService()
    results = {
        'imported': 0,
        'errors': []
    }

    for group_data in groups:
        group, _created = RuleGroup.objects.get_or_create(
            user=user,
            name=group_data.get('name', 'Imported rules'),
            defaults={
                'description': group_data.get('description', ''),
                'order': group_data.get('order', 0),
                'is_active': group_data.get('is_active', True),
            }
        )

        for rule_data in group_data.get('rules', []):
            try:
                service.create_rule(user, rule_data, rule_group=group, replace=True)
                results['imported'] += 1
            except RuleDefinitionError as e:
                results['errors'].append(f"Error importing rule '{rule_data.get('name', 'Unknown')}': {e}")

    return results


def generate_sample_rules() -> List[Dict[str, Any]]:
    """
    Generate sample rule definitions covering the common use cases.

    Returns:
        List of rule definitions accepted by ``validate_rule_definition``
    """
    return [
        {
            'name': 'Tag large expenses',
            'trigger_type': TriggerType.TRANSACTION_CREATED.value,
            'condition_groups': [
                {
                    'logic_operator': LogicOperator.AND.value,
                    'conditions': [
                        {'field': 'amount', 'operator': 'less_than', 'value': '-500'},
                    ],
                },
            ],
            'actions': [
                {'action_type': 'create_tag_if_not_exists', 'value': 'Large expense'},
                {'action_type': 'send_notification', 'value': 'Large expense booked'},
            ],
        },
        {
            'name': 'Groceries',
            'trigger_type': TriggerType.TRANSACTION_CREATED.value,
            'stop_processing': True,
            'condition_groups': [
                {
                    'logic_operator': LogicOperator.OR.value,
                    'conditions': [
                        {'field': 'description', 'operator': 'contains', 'value': 'lidl'},
                        {'field': 'description', 'operator': 'contains', 'value': 'kaufland'},
                        {'field': 'partner', 'operator': 'regex', 'value': '^(billa|tesco)'},
                    ],
                },
            ],
            'actions': [
                {'action_type': 'create_category_if_not_exists', 'value': 'Groceries'},
            ],
        },
        {
            'name': 'Salary',
            'trigger_type': TriggerType.TRANSACTION_CREATED.value,
            'condition_groups': [
                {
                    'logic_operator': LogicOperator.AND.value,
                    'conditions': [
                        {'field': 'amount', 'operator': 'greater_than', 'value': '0'},
                        {'field': 'description', 'operator': 'wildcard', 'value': '*salary*'},
                    ],
                },
            ],
            'actions': [
                {'action_type': 'set_type', 'value': 'deposit'},
                {'action_type': 'create_category_if_not_exists', 'value': 'Income'},
                {'action_type': 'mark_reconciled', 'value': None},
            ],
        },
    ]
