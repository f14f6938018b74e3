import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Sequence

from django.db import transaction as db_transaction
from django.utils import timezone

from transactions.models import Transaction

from .conf import engine_setting
from .enums import TriggerType
from .exceptions import RuleDefinitionError
from .models import ConditionGroup, Rule, RuleAction, RuleCondition, RuleGroup
from .repositories import TransactionRepository
from .results import ExecutionSummary
from .rule_engine import RuleEngine
from .utils import validate_rule_definition


logger = logging.getLogger('rules.engine')

DEFAULT_GROUP_NAME = 'Default'


class RuleService:
    """
    Service layer for rule management and rule execution.

    The engine only changes transactions in memory; this layer decides which
    transactions a run covers and saves the fields the engine changed.
    """

    def __init__(self, transaction_repository: Optional[TransactionRepository] = None):
        self.transaction_repository = transaction_repository or TransactionRepository()

    def get_engine(self, user) -> RuleEngine:
        return RuleEngine(user, on_processed=self.persist_changes)

    # Execution

    def apply_rules(
        self,
        user,
        transaction_ids: Optional[Sequence[int]] = None,
        rule_ids: Optional[Sequence[int]] = None,
        start=None,
        end=None,
        trigger_type=TriggerType.MANUAL,
        dry_run: bool = False
    ) -> ExecutionSummary:
        """
        Run rules for a user and persist the resulting transaction changes.

        The transaction set is chosen in this order: explicit ids, then the
        ``start``/``end`` date range, then every transaction of the user when
        rule ids are given. With neither, nothing is processed.

        Args:
            user: Owner of the rules and transactions
            transaction_ids: Restrict the run to these transactions
            rule_ids: Run only these rules instead of the trigger's rules
            start: First booked date of the range (inclusive)
            end: Last booked date of the range (inclusive)
            trigger_type: Trigger whose rules run when no rule ids are given
            dry_run: Preview without changing anything

        Returns:
            ExecutionSummary: Outcome of every rule evaluated
        """
        engine = self.get_engine(user)

        logger.info(
            "Starting rule processing",
            extra={
                'user_id': user.pk,
                'rule_ids': list(rule_ids or []),
                'start_date': start.isoformat() if start else None,
                'end_date': end.isoformat() if end else None,
                'transaction_count': len(transaction_ids or []),
                'dry_run': dry_run,
                'event_type': 'rule_processing_started',
            }
        )

        if transaction_ids:
            transactions = self._user_transactions(user).filter(id__in=list(transaction_ids))
            if rule_ids:
                summary = engine.process_transactions_for_rules(transactions, rule_ids, dry_run=dry_run)
            else:
                summary = engine.process_transactions(transactions, trigger_type, dry_run=dry_run)
        elif start and end:
            summary = engine.process_date_range(start, end, rule_ids=rule_ids or None, dry_run=dry_run)
        elif rule_ids:
            transactions = self._user_transactions(user)
            summary = engine.process_transactions_for_rules(transactions, rule_ids, dry_run=dry_run)
        else:
            return ExecutionSummary(dry_run=dry_run, trigger_type=str(TriggerType(trigger_type)))

        return summary

    def process_new_transaction(self, transaction) -> ExecutionSummary:
        return self._process_single(transaction, TriggerType.TRANSACTION_CREATED)

    def process_updated_transaction(self, transaction) -> ExecutionSummary:
        return self._process_single(transaction, TriggerType.TRANSACTION_UPDATED)

    def persist_changes(self, transaction, result):
        """Save the scalar fields the engine changed on one transaction."""
        if not result.changed_fields:
            return
        self.transaction_repository.update(
            transaction,
            {name: getattr(transaction, name) for name in result.changed_fields}
        )

    def test_rule(self, user, transaction_ids: Sequence[int], definition: Dict[str, Any]) -> ExecutionSummary:
        """
        Preview an unsaved rule definition against some of the user's transactions.

        Raises:
            RuleDefinitionError: if the definition is invalid
        """
        validate_rule_definition(definition)

        limit = engine_setting('TEST_RULE_MAX_TRANSACTIONS')
        transactions = list(
            self._user_transactions(user).filter(id__in=list(transaction_ids))[:limit]
        )
        return self.get_engine(user).test_rule(transactions, definition)

    # Rule management

    def create_rule_group(self, user, name: str, description: str = '', order: int = 0,
                          is_active: bool = True) -> RuleGroup:
        return RuleGroup.objects.create(
            user=user,
            name=name,
            description=description,
            order=order,
            is_active=is_active
        )

    @db_transaction.atomic
    def create_rule(
        self,
        user,
        definition: Dict[str, Any],
        rule_group: Optional[RuleGroup] = None,
        replace: bool = False
    ) -> Rule:
        """
        Create a rule with its condition groups and actions.

        Args:
            user: Owner of the rule
            definition: Rule payload, see ``rules.utils.RULE_DEFINITION_SCHEMA``
            rule_group: Group to add the rule to; defaults to ``rule_group_id``
                from the payload, then to the user's default group
            replace: Delete a rule of the same name in the group first

        Returns:
            Rule: The created rule

        Raises:
            RuleDefinitionError: if the definition is invalid; nothing is written
        """
        validate_rule_definition(definition)
        rule_group = rule_group or self._resolve_group(user, definition.get('rule_group_id'))

        if replace:
            Rule.objects.filter(user=user, rule_group=rule_group, name=definition['name']).delete()

        rule = Rule.objects.create(
            user=user,
            rule_group=rule_group,
            name=definition['name'],
            description=definition.get('description', ''),
            trigger_type=definition.get('trigger_type', TriggerType.TRANSACTION_CREATED),
            order=definition.get('order', 0),
            is_active=definition.get('is_active', True),
            stop_processing=definition.get('stop_processing', False)
        )
        self._write_children(rule, definition)
        return rule

    @db_transaction.atomic
    def update_rule(self, rule: Rule, definition: Dict[str, Any]) -> Rule:
        """Replace a rule's settings, conditions and actions with ``definition``."""
        validate_rule_definition(definition)

        rule.name = definition['name']
        for attribute in ('description', 'trigger_type', 'order', 'is_active', 'stop_processing'):
            if attribute in definition:
                setattr(rule, attribute, definition[attribute])
        rule.save()

        rule.condition_groups.all().delete()
        rule.actions.all().delete()
        self._write_children(rule, definition)
        return rule

    @db_transaction.atomic
    def duplicate_rule(self, rule: Rule, name: Optional[str] = None) -> Rule:
        """Copy a rule with its condition groups and actions into the same group."""
        groups = list(rule.condition_groups.prefetch_related('conditions'))
        actions = list(rule.actions.all())

        copy = Rule.objects.get(pk=rule.pk)
        copy.pk = None
        copy.id = None
        copy._state.adding = True
        copy.name = name or f"{rule.name} (Copy)"
        copy.created_at = timezone.now()
        copy.save()

        for group in groups:
            conditions = list(group.conditions.all())
            group.pk = None
            group.id = None
            group._state.adding = True
            group.rule = copy
            group.save()

            for condition in conditions:
                condition.pk = None
                condition.id = None
                condition._state.adding = True
                condition.condition_group = group
                condition.save()

        for action in actions:
            action.pk = None
            action.id = None
            action._state.adding = True
            action.rule = copy
            action.save()

        return copy

    def reorder_rules(self, rule_ids: Sequence[int]) -> None:
        """Give each rule the position of its id in ``rule_ids`` as its order."""
        with db_transaction.atomic():
            for order, rule_id in enumerate(rule_ids):
                Rule.objects.filter(id=rule_id).update(order=order)

    def set_group_active(self, rule_group: RuleGroup, is_active: bool) -> RuleGroup:
        rule_group.is_active = is_active
        rule_group.save(update_fields=['is_active', 'updated_at'])
        return rule_group

    def get_rule_statistics(self, rule: Rule, days: Optional[int] = None) -> Dict[str, Any]:
        """
        Summarise the execution logs of a rule.

        Args:
            rule: The rule to report on
            days: Look back this many days; ``None`` uses the configured default

        Returns:
            Dict with execution and match counts, match rate and last timestamps
        """
        if days is None:
            days = engine_setting('STATISTICS_DAYS')

        logs = rule.execution_logs.filter(created_at__gte=timezone.now() - timedelta(days=days))
        matched_logs = logs.filter(matched=True)

        total = logs.count()
        matched = matched_logs.count()
        last_matched = matched_logs.order_by('-created_at').values_list('created_at', flat=True).first()
        last_executed = logs.order_by('-created_at').values_list('created_at', flat=True).first()

        return {
            'total_executions': total,
            'total_matches': matched,
            'match_rate': round(matched / total * 100, 2) if total > 0 else 0,
            'last_matched': last_matched,
            'last_executed': last_executed,
        }

    # Helpers

    def _user_transactions(self, user):
        return (
            Transaction.objects
            .filter(account__user=user)
            .select_related('account', 'category', 'merchant')
            .order_by('booked_date', 'id')
        )

    def _process_single(self, transaction, trigger_type) -> ExecutionSummary:
        user = transaction.account.user
        return self.get_engine(user).process_transactions([transaction], trigger_type)

    def _resolve_group(self, user, rule_group_id) -> RuleGroup:
        if rule_group_id is None:
            group, _created = RuleGroup.objects.get_or_create(user=user, name=DEFAULT_GROUP_NAME)
            return group
        try:
            return RuleGroup.objects.get(pk=rule_group_id, user=user)
        except RuleGroup.DoesNotExist:
            raise RuleDefinitionError(f"Rule group {rule_group_id} not found", ['rule_group_id'])

    def _write_children(self, rule: Rule, definition: Dict[str, Any]):
        for group_index, group_data in enumerate(definition.get('condition_groups', [])):
            group = ConditionGroup.objects.create(
                rule=rule,
                logic_operator=group_data.get('logic_operator', 'AND'),
                order=group_data.get('order', group_index)
            )
            for index, condition_data in enumerate(group_data.get('conditions', [])):
                value = condition_data.get('value')
                RuleCondition.objects.create(
                    condition_group=group,
                    field=condition_data['field'],
                    operator=condition_data['operator'],
                    value='' if value is None else str(value),
                    is_case_sensitive=condition_data.get('is_case_sensitive', False),
                    is_negated=condition_data.get('is_negated', False),
                    order=index
                )

        for index, action_data in enumerate(definition.get('actions', [])):
            action = RuleAction(
                rule=rule,
                action_type=action_data['action_type'],
                order=index,
                stop_processing=action_data.get('stop_processing', False)
            )
            action.set_value(action_data.get('value'))
            action.save()
