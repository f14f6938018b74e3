from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone

from transactions.models import Transaction, User

from .enums import ActionType, ConditionField, ConditionOperator, LogicOperator, TriggerType
from .exceptions import RuleDefinitionError
from .values import coerce_action_value, encode_action_value, read_action_value


class RuleGroup(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='rule_groups')
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    order = models.IntegerField(default=0)
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'rule_groups'
        ordering = ['user', 'order', 'id']

    def __str__(self):
        return self.name


class Rule(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='rules')
    rule_group = models.ForeignKey(RuleGroup, on_delete=models.CASCADE, related_name='rules')
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    trigger_type = models.CharField(
        max_length=30,
        choices=TriggerType.choices,
        default=TriggerType.TRANSACTION_CREATED
    )
    order = models.IntegerField(default=0, help_text="Evaluation sequence within the rule group")
    is_active = models.BooleanField(default=True)
    stop_processing = models.BooleanField(
        default=False,
        help_text="When this rule matches, later rules are skipped for the same transaction"
    )

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'rules'
        ordering = ['rule_group__order', 'order', 'id']
        indexes = [
            models.Index(fields=['user', 'trigger_type', 'is_active']),
        ]

    def __str__(self):
        return f"{self.name} ({self.trigger_type})"


class ConditionGroup(models.Model):
    rule = models.ForeignKey(Rule, on_delete=models.CASCADE, related_name='condition_groups')
    logic_operator = models.CharField(max_length=3, choices=LogicOperator.choices, default=LogicOperator.AND)
    order = models.IntegerField(default=0)

    class Meta:
        db_table = 'condition_groups'
        ordering = ['order', 'id']

    def __str__(self):
        return f"Condition group {self.id} ({self.logic_operator}) of rule {self.rule_id}"

    @property
    def is_and_logic(self):
        return self.logic_operator == LogicOperator.AND


class RuleCondition(models.Model):
    condition_group = models.ForeignKey(ConditionGroup, on_delete=models.CASCADE, related_name='conditions')
    field = models.CharField(max_length=30, choices=ConditionField.choices)
    operator = models.CharField(max_length=30, choices=ConditionOperator.choices)
    value = models.TextField(blank=True, default='', help_text="Comma separated for 'in', 'not_in' and 'between'")
    is_case_sensitive = models.BooleanField(default=False)
    is_negated = models.BooleanField(default=False)
    order = models.IntegerField(default=0)

    class Meta:
        db_table = 'rule_conditions'
        ordering = ['order', 'id']

    def __str__(self):
        negation = 'NOT ' if self.is_negated else ''
        return f"{negation}{self.field} {self.operator} {self.value!r}"

    def clean(self):
        try:
            field = ConditionField(self.field)
            operator = ConditionOperator(self.operator)
        except ValueError as e:
            raise ValidationError(str(e))

        if not operator.accepts(field.value_type):
            raise ValidationError(
                f"Operator '{operator.value}' cannot be used with {field.value_type.value} field '{field.value}'"
            )


class RuleAction(models.Model):
    rule = models.ForeignKey(Rule, on_delete=models.CASCADE, related_name='actions')
    action_type = models.CharField(max_length=40, choices=ActionType.choices)
    value = models.TextField(
        blank=True,
        null=True,
        help_text="Identifier for id-based actions, text for string-based actions, empty otherwise"
    )
    order = models.IntegerField(default=0)
    stop_processing = models.BooleanField(
        default=False,
        help_text="When this action fails, the remaining actions of the rule are skipped"
    )

    class Meta:
        db_table = 'rule_actions'
        ordering = ['order', 'id']

    def __str__(self):
        return f"{self.action_type}: {self.value or ''}"

    def set_value(self, raw):
        """Store ``raw`` as the value variant required by the action type."""
        self.value = encode_action_value(coerce_action_value(self.action_type, raw))

    @property
    def typed_value(self):
        return read_action_value(self.action_type, self.value)

    def clean(self):
        try:
            self.set_value(self.value)
        except (RuleDefinitionError, ValueError) as e:
            raise ValidationError(str(e))

    def save(self, *args, **kwargs):
        self.set_value(self.value)
        super().save(*args, **kwargs)


class RuleExecutionLog(models.Model):
    rule = models.ForeignKey(Rule, on_delete=models.CASCADE, related_name='execution_logs')
    transaction = models.ForeignKey(
        Transaction,
        on_delete=models.CASCADE,
        related_name='rule_execution_logs'
    )
    matched = models.BooleanField(default=False)
    actions_executed = models.JSONField(default=list, blank=True)
    execution_context = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'rule_execution_logs'
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['rule', 'matched']),
            models.Index(fields=['transaction']),
        ]

    def __str__(self):
        outcome = 'matched' if self.matched else 'not matched'
        return f"Rule {self.rule_id} on Transaction {self.transaction_id}: {outcome}"

    def save(self, *args, **kwargs):
        # Audit rows are append-only
        if not self._state.adding:
            raise ValueError("Rule execution logs cannot be modified once written")
        super().save(*args, **kwargs)
