"""
In-memory view of a rule as the engine evaluates it.

A ``RuleDefinition`` is built either from a stored ``Rule`` (with its
condition groups, conditions and actions prefetched) or from a plain payload
describing a rule that has not been saved yet, so that previews and live runs
go through the same evaluation code.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .enums import LogicOperator, TriggerType
from .models import RuleAction, RuleCondition


@dataclass
class ConditionGroupDefinition:
    logic_operator: str = LogicOperator.AND
    conditions: List[RuleCondition] = field(default_factory=list)

    @property
    def is_and_logic(self) -> bool:
        return self.logic_operator == LogicOperator.AND


@dataclass
class RuleDefinition:
    id: Optional[int]
    name: str
    trigger_type: str = TriggerType.MANUAL
    stop_processing: bool = False
    condition_groups: List[ConditionGroupDefinition] = field(default_factory=list)
    actions: List[RuleAction] = field(default_factory=list)

    @classmethod
    def from_rule(cls, rule) -> 'RuleDefinition':
        return cls(
            id=rule.id,
            name=rule.name,
            trigger_type=rule.trigger_type,
            stop_processing=rule.stop_processing,
            condition_groups=[
                ConditionGroupDefinition(group.logic_operator, list(group.conditions.all()))
                for group in rule.condition_groups.all()
            ],
            actions=list(rule.actions.all()),
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'RuleDefinition':
        """
        Build an unsaved definition from a validated payload.

        Raises:
            RuleDefinitionError: if an action value does not fit its action type
        """
        groups = []
        for group_data in sorted(payload.get('condition_groups', []), key=lambda g: g.get('order', 0)):
            conditions = [
                RuleCondition(
                    field=condition['field'],
                    operator=condition['operator'],
                    value='' if condition.get('value') is None else str(condition['value']),
                    is_case_sensitive=condition.get('is_case_sensitive', False),
                    is_negated=condition.get('is_negated', False),
                    order=index,
                )
                for index, condition in enumerate(group_data.get('conditions', []))
            ]
            groups.append(ConditionGroupDefinition(
                group_data.get('logic_operator', LogicOperator.AND),
                conditions
            ))

        actions = []
        for index, action_data in enumerate(payload.get('actions', [])):
            action = RuleAction(
                action_type=action_data['action_type'],
                order=index,
                stop_processing=action_data.get('stop_processing', False),
            )
            action.set_value(action_data.get('value'))
            actions.append(action)

        return cls(
            id=payload.get('id'),
            name=payload.get('name', 'Test Rule'),
            trigger_type=payload.get('trigger_type', TriggerType.MANUAL),
            stop_processing=payload.get('stop_processing', False),
            condition_groups=groups,
            actions=actions,
        )
