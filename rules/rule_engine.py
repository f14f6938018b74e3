import logging
from typing import Callable, Iterable, List, Optional, Sequence

from django.db import transaction as db_transaction
from django.db.models import Prefetch

from transactions.models import Transaction

from .actions import ActionExecutor
from .conditions import ConditionEvaluator
from .conf import engine_setting
from .definitions import ConditionGroupDefinition, RuleDefinition
from .enums import TriggerType
from .models import ConditionGroup, Rule
from .repositories import ExecutionLogRepository
from .results import ExecutionSummary, RuleOutcome, TransactionSummary


logger = logging.getLogger('rules.engine')


class RuleEngine:
    """
    Runs a user's rules against a batch of transactions.

    Rules are evaluated in ``rule_group.order`` / ``order`` sequence. A rule
    matches when every one of its condition groups matches; inside a group the
    conditions are combined with the group's AND/OR operator. Matching rules
    apply their actions in order. All state is scoped to a single run.

    Stop processing: once a matching rule with ``stop_processing`` set has run,
    the remaining rules are skipped for that transaction. Skipped rules are
    not evaluated and therefore get no execution log entry.
    """

    def __init__(
        self,
        user,
        evaluator: Optional[ConditionEvaluator] = None,
        executor: Optional[ActionExecutor] = None,
        log_repository: Optional[ExecutionLogRepository] = None,
        logging_enabled: Optional[bool] = None,
        on_processed: Optional[Callable] = None
    ):
        self.user = user
        self.evaluator = evaluator or ConditionEvaluator()
        self.executor = executor or ActionExecutor()
        self.log_repository = log_repository or ExecutionLogRepository()
        if logging_enabled is None:
            logging_enabled = engine_setting('EXECUTION_LOGGING')
        self.logging_enabled = logging_enabled
        # Called with (transaction, TransactionSummary) after each live transaction
        self.on_processed = on_processed

    # Entry points

    def process_transactions(
        self,
        transactions: Iterable[Transaction],
        trigger_type=TriggerType.MANUAL,
        dry_run: bool = False
    ) -> ExecutionSummary:
        trigger_type = TriggerType(trigger_type)
        rules = self.rules_for_trigger(trigger_type)
        return self._process(transactions, rules, trigger_type, dry_run)

    def process_transactions_for_rules(
        self,
        transactions: Iterable[Transaction],
        rule_ids: Sequence[int],
        dry_run: bool = False
    ) -> ExecutionSummary:
        rules = self.rules_by_id(rule_ids)
        return self._process(transactions, rules, TriggerType.MANUAL, dry_run)

    def process_date_range(self, start, end, rule_ids: Optional[Sequence[int]] = None, dry_run: bool = False):
        """Process every transaction of the user booked between ``start`` and ``end`` inclusive."""
        if rule_ids is not None:
            rules = self.rules_by_id(rule_ids)
        else:
            rules = self.rules_for_trigger(TriggerType.MANUAL)

        transactions = (
            Transaction.objects
            .filter(account__user=self.user, booked_date__range=(start, end))
            .select_related('account', 'category', 'merchant')
            .order_by('booked_date', 'id')
            .iterator(chunk_size=engine_setting('BATCH_SIZE'))
        )
        return self._process(transactions, rules, TriggerType.MANUAL, dry_run)

    def test_rule(self, transactions: Iterable[Transaction], definition) -> ExecutionSummary:
        """
        Preview a rule that may not be saved yet.

        ``definition`` is a ``RuleDefinition`` or a payload accepted by
        ``RuleDefinition.from_payload``. Nothing is mutated and no execution
        log is written.
        """
        if not isinstance(definition, RuleDefinition):
            definition = RuleDefinition.from_payload(definition)
        return self._process(transactions, [definition], TriggerType.MANUAL, dry_run=True, log=False)

    # Rule selection

    def _rule_queryset(self):
        return (
            Rule.objects
            .filter(user=self.user, is_active=True, rule_group__is_active=True)
            .select_related('rule_group')
            .prefetch_related(
                Prefetch('condition_groups', queryset=ConditionGroup.objects.prefetch_related('conditions')),
                'actions',
            )
            .order_by('rule_group__order', 'rule_group_id', 'order', 'id')
        )

    def rules_for_trigger(self, trigger_type) -> List[RuleDefinition]:
        rules = self._rule_queryset().filter(trigger_type=TriggerType(trigger_type))
        return [RuleDefinition.from_rule(rule) for rule in rules]

    def rules_by_id(self, rule_ids: Sequence[int]) -> List[RuleDefinition]:
        rules = self._rule_queryset().filter(id__in=list(rule_ids))
        return [RuleDefinition.from_rule(rule) for rule in rules]

    # Matching

    def rule_matches(self, rule: RuleDefinition, transaction) -> bool:
        # A rule without condition groups matches every transaction
        return all(
            self.condition_group_matches(group, transaction)
            for group in rule.condition_groups
        )

    def condition_group_matches(self, group: ConditionGroupDefinition, transaction) -> bool:
        # An empty group matches: all([]) is True, and an empty OR group is
        # treated the same way
        if not group.conditions:
            return True

        results = (self.evaluator.evaluate(condition, transaction) for condition in group.conditions)
        if group.is_and_logic:
            return all(results)
        return any(results)

    # Processing

    def _process(self, transactions, rules, trigger_type, dry_run, log=True) -> ExecutionSummary:
        self.evaluator.clear_cache()
        self.executor.clear_caches()

        summary = ExecutionSummary(dry_run=dry_run, trigger_type=str(trigger_type))
        rule_ids = [rule.id for rule in rules]

        for transaction in transactions:
            result = TransactionSummary(transaction_id=transaction.pk)
            summary.transactions.append(result)

            try:
                with db_transaction.atomic():
                    if transaction.owner_id != self.user.pk:
                        raise PermissionError(
                            f"Transaction {transaction.pk} does not belong to user {self.user.pk}"
                        )
                    self._process_transaction(transaction, rules, result, trigger_type, dry_run, log)
                    if self.on_processed is not None and not dry_run:
                        self.on_processed(transaction, result)
            except Exception as e:
                result.error = str(e)
                self._discard_changes(transaction, result)
                logger.error(
                    "Rule processing failed for transaction",
                    exc_info=True,
                    extra={
                        'user_id': self.user.pk,
                        'rule_ids': rule_ids,
                        'transaction_id': transaction.pk,
                        'dry_run': dry_run,
                        'error': str(e),
                        'event_type': 'transaction_processing_failed',
                    }
                )

        logger.info(
            "Rule processing run completed",
            extra={
                'user_id': self.user.pk,
                'trigger_type': str(trigger_type),
                'dry_run': dry_run,
                'total_processed': summary.total_processed,
                'total_matched': summary.total_matched,
                'total_failed': len(summary.failed),
                'event_type': 'rule_run_completed',
            }
        )
        return summary

    def _discard_changes(self, transaction, result):
        """Drop in-memory edits of a transaction whose database work was rolled back."""
        result.rules = []
        result.changed_fields = []
        self.executor.clear_caches()
        self.evaluator.invalidate(transaction)
        if transaction.pk is not None:
            transaction.refresh_from_db()

    def _process_transaction(self, transaction, rules, result, trigger_type, dry_run, log):
        for rule in rules:
            matched = self.rule_matches(rule, transaction)
            outcome = RuleOutcome(rule_id=rule.id, rule_name=rule.name, matched=matched)

            if matched:
                outcome.actions = self._run_actions(rule, transaction, dry_run)
                changed = [name for action in outcome.actions for name in action.changed_fields]
                result.record_changes(changed)
                if not dry_run and any(action.success for action in outcome.actions):
                    self.evaluator.invalidate(transaction)
                outcome.stopped_processing = rule.stop_processing

            result.rules.append(outcome)

            if log:
                self._log_execution(rule, transaction, outcome, trigger_type, dry_run)

            if matched and rule.stop_processing:
                break

    def _run_actions(self, rule, transaction, dry_run):
        outcomes = []
        for action in rule.actions:
            outcome = self.executor.run(action, transaction, dry_run=dry_run)
            outcomes.append(outcome)

            if not outcome.success and action.stop_processing:
                logger.info(
                    "Action failed with stop processing set, skipping remaining actions",
                    extra={
                        'rule_id': rule.id,
                        'transaction_id': transaction.pk,
                        'action_type': outcome.action_type,
                        'event_type': 'action_chain_stopped',
                    }
                )
                break
        return outcomes

    def _log_execution(self, rule, transaction, outcome, trigger_type, dry_run):
        if not self.logging_enabled or rule.id is None or transaction.pk is None:
            return

        self.log_repository.create({
            'rule_id': rule.id,
            'transaction_id': transaction.pk,
            'matched': outcome.matched,
            'actions_executed': [action.as_dict() for action in outcome.actions],
            'execution_context': {
                'trigger_type': str(trigger_type),
                'dry_run': dry_run,
                'stopped_processing': outcome.stopped_processing,
            },
        })
