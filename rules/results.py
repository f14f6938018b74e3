from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class ActionOutcome:
    action_type: str
    success: bool
    description: str = ''
    changed_fields: Tuple[str, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            'action_type': self.action_type,
            'success': self.success,
            'description': self.description,
        }


@dataclass
class RuleOutcome:
    rule_id: Optional[int]
    rule_name: str
    matched: bool
    actions: List[ActionOutcome] = field(default_factory=list)
    stopped_processing: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            'rule_id': self.rule_id,
            'rule_name': self.rule_name,
            'matched': self.matched,
            'actions': [action.as_dict() for action in self.actions],
            'stopped_processing': self.stopped_processing,
        }


@dataclass
class TransactionSummary:
    transaction_id: Optional[int]
    rules: List[RuleOutcome] = field(default_factory=list)
    changed_fields: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def matched_rule_ids(self) -> List[Optional[int]]:
        return [outcome.rule_id for outcome in self.rules if outcome.matched]

    def record_changes(self, fields):
        for name in fields:
            if name not in self.changed_fields:
                self.changed_fields.append(name)

    def as_dict(self) -> Dict[str, Any]:
        data = {
            'transaction_id': self.transaction_id,
            'rules': [outcome.as_dict() for outcome in self.rules],
        }
        if self.error:
            data['error'] = self.error
        return data


@dataclass
class ExecutionSummary:
    """Per-run outcome of every rule evaluated against every transaction."""

    dry_run: bool = False
    trigger_type: Optional[str] = None
    transactions: List[TransactionSummary] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return len(self.transactions)

    @property
    def total_matched(self) -> int:
        return sum(1 for summary in self.transactions if summary.matched_rule_ids)

    @property
    def failed(self) -> List[TransactionSummary]:
        return [summary for summary in self.transactions if summary.error]

    def for_transaction(self, transaction_id) -> Optional[TransactionSummary]:
        for summary in self.transactions:
            if summary.transaction_id == transaction_id:
                return summary
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'dry_run': self.dry_run,
            'trigger_type': self.trigger_type,
            'total_processed': self.total_processed,
            'total_matched': self.total_matched,
            'transactions': [summary.as_dict() for summary in self.transactions],
        }
