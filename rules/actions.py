import logging
from typing import Callable, Iterable, Optional

from django.utils import timezone

from transactions.models import Category, Merchant, Tag, Transaction

from .enums import ActionFamily, ActionType
from .results import ActionOutcome
from .signals import rule_notification
from .values import Identifier, Text


logger = logging.getLogger('rules.actions')
notification_logger = logging.getLogger('rules.notifications')

ENTITY_DESCRIPTION = 'Created by rule engine'

# A plan applies one mutation and returns the concrete transaction fields it changed
Plan = Callable[[], Iterable[str]]


class ActionExecutor:
    """
    Applies a single ``RuleAction`` to a transaction.

    Every action is first planned: its value is resolved inside the owning
    user's scope without touching anything. Only a successful plan is applied.
    Previews (dry runs) stop after planning, so they follow exactly the same
    resolution path as live executions.

    Scalar field changes stay on the in-memory transaction for the caller to
    save; tag associations and find-or-create entities are written directly.
    """

    def __init__(self):
        self._entity_cache = {}

    def execute(self, action, transaction) -> bool:
        return self.run(action, transaction).success

    def preview(self, action, transaction) -> bool:
        return self.run(action, transaction, dry_run=True).success

    def run(self, action, transaction, dry_run: bool = False) -> ActionOutcome:
        try:
            action_type = ActionType(action.action_type)
        except ValueError:
            logger.warning(
                "Unknown rule action type",
                extra={
                    'action_type': action.action_type,
                    'transaction_id': transaction.id,
                    'event_type': 'unknown_action_type',
                }
            )
            return ActionOutcome(str(action.action_type), False, 'Unknown action')

        try:
            description = self.describe(action)
            plan = self._plan(action_type, action, transaction)
            if plan is None:
                return ActionOutcome(action_type.value, False, description)

            changed = () if dry_run else tuple(plan())
            return ActionOutcome(action_type.value, True, description, changed)

        except Exception as e:
            logger.error(
                "Rule action execution failed",
                exc_info=True,
                extra={
                    'action_type': action_type.value,
                    'action_value': action.value,
                    'rule_id': action.rule_id,
                    'transaction_id': transaction.id,
                    'error': str(e),
                    'event_type': 'action_failed',
                }
            )
            return ActionOutcome(action_type.value, False, f"Failed: {action_type.label}")

    def validate_action_value(self, action_type, value) -> bool:
        """Pre-check a value for ``action_type`` without executing anything."""
        try:
            family = ActionType(action_type).family
        except ValueError:
            return False

        if family is ActionFamily.VALUELESS:
            return True

        if family is ActionFamily.ID_BASED:
            if isinstance(value, bool):
                return False
            if isinstance(value, int):
                return value > 0
            if isinstance(value, str) and value.strip().isdigit():
                return int(value.strip()) > 0
            return False

        return isinstance(value, str) and value != ''

    def describe(self, action) -> str:
        """Human readable summary of a configured action, for audit and display."""
        try:
            action_type = ActionType(action.action_type)
        except ValueError:
            return 'Unknown action'

        value = action.typed_value

        if action_type == ActionType.SET_CATEGORY:
            return f"Set category to: {self._entity_name(Category, value, 'Category')}"
        if action_type == ActionType.SET_MERCHANT:
            return f"Set merchant to: {self._entity_name(Merchant, value, 'Merchant')}"
        if action_type == ActionType.ADD_TAG:
            return f"Add tag: {self._entity_name(Tag, value, 'Tag')}"
        if action_type == ActionType.REMOVE_TAG:
            return f"Remove tag: {self._entity_name(Tag, value, 'Tag')}"
        if action_type == ActionType.REMOVE_ALL_TAGS:
            return 'Remove all tags'
        if action_type == ActionType.SET_DESCRIPTION:
            return f"Set description to: {value}"
        if action_type == ActionType.APPEND_DESCRIPTION:
            return f"Append to description: {value}"
        if action_type == ActionType.PREPEND_DESCRIPTION:
            return f"Prepend to description: {value}"
        if action_type == ActionType.SET_NOTE:
            return f"Set note to: {value}"
        if action_type == ActionType.APPEND_NOTE:
            return f"Append to note: {value}"
        if action_type == ActionType.SET_TYPE:
            return f"Set type to: {value}"
        if action_type == ActionType.MARK_RECONCILED:
            return 'Mark as reconciled'
        if action_type == ActionType.SEND_NOTIFICATION:
            return f"Send notification: {value}" if value else 'Send notification'
        if action_type == ActionType.CREATE_TAG_IF_NOT_EXISTS:
            return f"Create tag if not exists: {value}"
        if action_type == ActionType.CREATE_CATEGORY_IF_NOT_EXISTS:
            return f"Create category if not exists: {value}"
        if action_type == ActionType.CREATE_MERCHANT_IF_NOT_EXISTS:
            return f"Create merchant if not exists: {value}"
        return 'Unknown action'

    def clear_caches(self):
        self._entity_cache = {}
        return self

    def cache_stats(self):
        return {
            model.__name__.lower(): sum(1 for key in self._entity_cache if key[0] is model)
            for model in (Category, Merchant, Tag)
        }

    # Planning

    def _plan(self, action_type: ActionType, action, transaction) -> Optional[Plan]:
        value = action.typed_value
        owner_id = transaction.owner_id
        if owner_id is None:
            return None

        if action_type == ActionType.SET_CATEGORY:
            category = self._find_owned(Category, value, owner_id)
            return self._set_fields(transaction, category=category) if category else None

        if action_type == ActionType.SET_MERCHANT:
            merchant = self._find_owned(Merchant, value, owner_id)
            return self._set_fields(transaction, merchant=merchant) if merchant else None

        if action_type == ActionType.ADD_TAG:
            tag = self._find_owned(Tag, value, owner_id)
            if tag is None or transaction.pk is None:
                return None
            return lambda: self._attach_tag(transaction, tag)

        if action_type == ActionType.REMOVE_TAG:
            tag = self._find_owned(Tag, value, owner_id)
            if tag is None:
                return None
            return lambda: self._detach_tag(transaction, tag)

        if action_type == ActionType.REMOVE_ALL_TAGS:
            return lambda: self._detach_all_tags(transaction)

        if action_type == ActionType.MARK_RECONCILED:
            return lambda: self._mark_reconciled(transaction)

        if action_type == ActionType.SEND_NOTIFICATION:
            return lambda: self._send_notification(action, transaction)

        # Everything below needs text
        if not isinstance(value, Text):
            return None
        text = value.text

        if action_type == ActionType.SET_DESCRIPTION:
            return self._set_fields(transaction, description=text)
        if action_type == ActionType.APPEND_DESCRIPTION:
            return self._set_fields(transaction, description=(transaction.description or '') + text)
        if action_type == ActionType.PREPEND_DESCRIPTION:
            return self._set_fields(transaction, description=text + (transaction.description or ''))
        if action_type == ActionType.SET_NOTE:
            return self._set_fields(transaction, note=text)
        if action_type == ActionType.APPEND_NOTE:
            return self._set_fields(transaction, note=(transaction.note or '') + text)

        if action_type == ActionType.SET_TYPE:
            new_type = text.strip().upper()
            if new_type not in Transaction.valid_types():
                return None
            return self._set_fields(transaction, type=new_type)

        if action_type == ActionType.CREATE_TAG_IF_NOT_EXISTS:
            if transaction.pk is None:
                return None
            return lambda: self._attach_tag(transaction, self._find_or_create(Tag, text, owner_id))

        if action_type == ActionType.CREATE_CATEGORY_IF_NOT_EXISTS:
            return lambda: self._set_fields(
                transaction, category=self._find_or_create(Category, text, owner_id)
            )()

        if action_type == ActionType.CREATE_MERCHANT_IF_NOT_EXISTS:
            return lambda: self._set_fields(
                transaction, merchant=self._find_or_create(Merchant, text, owner_id)
            )()

        return None

    def _find_owned(self, model, value, owner_id):
        """Resolve an identifier, rejecting entities that belong to another user."""
        if not isinstance(value, Identifier):
            return None

        cache_key = (model, value.id)
        if cache_key not in self._entity_cache:
            self._entity_cache[cache_key] = model.objects.filter(pk=value.id).first()
        entity = self._entity_cache[cache_key]

        if entity is None or entity.user_id != owner_id:
            return None
        return entity

    def _find_or_create(self, model, name, owner_id):
        entity, created = model.objects.get_or_create(
            user_id=owner_id,
            name=name,
            defaults={'description': ENTITY_DESCRIPTION}
        )
        if created:
            logger.info(
                "Rule engine created %s", model.__name__.lower(),
                extra={
                    'entity_id': entity.pk,
                    'entity_name': name,
                    'user_id': owner_id,
                    'event_type': 'entity_created',
                }
            )
        self._entity_cache[(model, entity.pk)] = entity
        return entity

    # Mutations

    def _set_fields(self, transaction, **changes) -> Plan:
        def apply():
            for name, value in changes.items():
                setattr(transaction, name, value)
            return list(changes)
        return apply

    def _attach_tag(self, transaction, tag):
        # add() skips rows that already exist, so re-adding is a no-op
        transaction.tags.add(tag)
        return []

    def _detach_tag(self, transaction, tag):
        if transaction.pk is not None:
            transaction.tags.remove(tag)
        return []

    def _detach_all_tags(self, transaction):
        if transaction.pk is not None:
            transaction.tags.clear()
        return []

    def _mark_reconciled(self, transaction):
        transaction.is_reconciled = True
        transaction.reconciled_at = timezone.now()
        return ['is_reconciled', 'reconciled_at']

    def _send_notification(self, action, transaction):
        message = str(action.typed_value) if action.typed_value else 'Rule matched for transaction'
        notification_logger.info(
            "Rule triggered notification",
            extra={
                'rule_id': action.rule_id,
                'transaction_id': transaction.id,
                'notification_message': message,
                'event_type': 'rule_notification',
            }
        )
        responses = rule_notification.send_robust(
            sender=self.__class__,
            rule_id=action.rule_id,
            transaction=transaction,
            message=message,
        )
        for receiver, response in responses:
            if isinstance(response, Exception):
                notification_logger.warning(
                    "Notification receiver failed",
                    extra={
                        'receiver': getattr(receiver, '__name__', repr(receiver)),
                        'error': str(response),
                        'event_type': 'notification_receiver_failed',
                    }
                )
        return []

    def _entity_name(self, model, value, label) -> str:
        if not isinstance(value, Identifier):
            return str(value) if value is not None else f"{label} (none)"

        cache_key = (model, value.id)
        if cache_key not in self._entity_cache:
            self._entity_cache[cache_key] = model.objects.filter(pk=value.id).first()
        entity = self._entity_cache[cache_key]
        return entity.name if entity else f"{label} #{value.id}"
