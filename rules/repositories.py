from typing import Any, Dict

from .models import RuleExecutionLog


class ExecutionLogRepository:
    """Writes one append-only ``RuleExecutionLog`` row per attribute map."""

    def create(self, attributes: Dict[str, Any]) -> RuleExecutionLog:
        return RuleExecutionLog.objects.create(**attributes)


class TransactionRepository:
    """Persists the fields the rule engine changed on a transaction."""

    def update(self, transaction, attributes: Dict[str, Any]):
        if not attributes:
            return transaction

        for name, value in attributes.items():
            setattr(transaction, name, value)
        transaction.save(update_fields=list(attributes) + ['updated_at'])
        return transaction
