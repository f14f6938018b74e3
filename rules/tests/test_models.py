from django.core.exceptions import ValidationError
from django.test import TestCase

from rules.enums import ActionFamily, ActionType, ConditionField, ConditionOperator, ValueType
from rules.exceptions import RuleDefinitionError
from rules.models import Rule, RuleAction, RuleCondition, RuleExecutionLog
from rules.tests.factories import (
    RuleActionFactory, RuleFactory, RuleGroupFactory, TransactionFactory, UserFactory
)
from rules.values import Identifier, Text, coerce_action_value, read_action_value


class TestActionValues(TestCase):
    """The stored value of an action is decided by its family when written"""

    def test_id_based_values(self):
        """Test id based values"""
        self.assertEqual(coerce_action_value('set_category', 12), Identifier(12))
        self.assertEqual(coerce_action_value('set_category', ' 12 '), Identifier(12))
        self.assertEqual(coerce_action_value('add_tag', '"12"'), Identifier(12))

    def test_id_based_rejects_non_identifiers(self):
        """Test id based rejects non identifiers"""
        for raw in ('Food', 0, -3, None, '', True, '1.5'):
            with self.subTest(raw=raw):
                with self.assertRaises(RuleDefinitionError):
                    coerce_action_value('set_merchant', raw)

    def test_string_based_values(self):
        """Test string based values"""
        self.assertEqual(coerce_action_value('set_note', 'hello'), Text('hello'))
        self.assertEqual(coerce_action_value('set_note', '"quoted"'), Text('quoted'))
        self.assertEqual(coerce_action_value('set_note', 42), Text('42'))

    def test_string_based_rejects_empty(self):
        """Test string based rejects empty"""
        with self.assertRaises(RuleDefinitionError):
            coerce_action_value('append_description', '')
        with self.assertRaises(RuleDefinitionError):
            coerce_action_value('append_description', None)

    def test_valueless_values(self):
        """Test valueless values"""
        self.assertIsNone(coerce_action_value('mark_reconciled', None))
        self.assertIsNone(coerce_action_value('remove_all_tags', ''))
        self.assertEqual(coerce_action_value('send_notification', 'Heads up'), Text('Heads up'))

    def test_reading_never_decodes_json(self):
        """Test reading never decodes json"""
        self.assertEqual(read_action_value('set_note', '"quoted"'), Text('"quoted"'))
        self.assertEqual(read_action_value('set_category', '7'), Identifier(7))
        self.assertIsNone(read_action_value('set_category', 'seven'))
        self.assertIsNone(read_action_value('teleport', '7'))

    def test_every_action_type_has_a_family(self):
        """Test every action type has a family"""
        for action_type in ActionType:
            self.assertIsInstance(action_type.family, ActionFamily)

    def test_operator_compatibility(self):
        """Test operator compatibility"""
        self.assertEqual(ConditionField.AMOUNT.value_type, ValueType.NUMERIC)
        self.assertTrue(ConditionOperator.BETWEEN.accepts(ValueType.DATE))
        self.assertFalse(ConditionOperator.GREATER_THAN.accepts(ValueType.STRING))
        self.assertTrue(ConditionOperator.CONTAINS.accepts(ValueType.TAG_SET))
        self.assertTrue(ConditionOperator.IS_EMPTY.accepts(ValueType.RELATION))


class TestRuleModels(TestCase):

    def test_action_save_normalises_value(self):
        """Test action save normalises value"""
        action = RuleActionFactory(action_type=ActionType.ADD_TAG, value='"15"')

        action.refresh_from_db()
        self.assertEqual(action.value, '15')
        self.assertEqual(action.typed_value, Identifier(15))

    def test_action_save_rejects_bad_value(self):
        """Test action save rejects bad value"""
        with self.assertRaises(RuleDefinitionError):
            RuleActionFactory(action_type=ActionType.SET_CATEGORY, value='Groceries')

    def test_action_clean(self):
        """Test action clean"""
        action = RuleAction(rule=RuleFactory(), action_type=ActionType.SET_NOTE, value='')
        with self.assertRaises(ValidationError):
            action.clean()

    def test_condition_clean_checks_operator_against_field(self):
        """Test condition clean checks operator against field"""
        condition = RuleCondition(field='description', operator='between', value='1,2')
        with self.assertRaises(ValidationError):
            condition.clean()

        RuleCondition(field='amount', operator='between', value='1,2').clean()

    def test_condition_clean_rejects_unknown_field(self):
        """Test condition clean rejects unknown field"""
        with self.assertRaises(ValidationError):
            RuleCondition(field='colour', operator='equals', value='red').clean()

    def test_deleting_group_cascades_to_rules(self):
        """Test deleting group cascades to rules"""
        group = RuleGroupFactory()
        RuleFactory(rule_group=group)
        RuleFactory(rule_group=group)

        group.delete()

        self.assertFalse(Rule.objects.exists())

    def test_execution_log_is_append_only(self):
        """Test execution log is append only"""
        rule = RuleFactory()
        log = RuleExecutionLog.objects.create(
            rule=rule,
            transaction=TransactionFactory(),
            matched=True,
            actions_executed=[{'action_type': 'set_note', 'success': True, 'description': 'Set note to: x'}],
            execution_context={'trigger_type': 'manual', 'dry_run': False},
        )

        log.matched = False
        with self.assertRaises(ValueError):
            log.save()

        log.refresh_from_db()
        self.assertTrue(log.matched)

    def test_transaction_owner_follows_account(self):
        """Test that a transaction is owned by its account's user"""
        transaction = TransactionFactory()
        self.assertEqual(transaction.owner_id, transaction.account.user_id)
        self.assertIsNone(TransactionFactory.build(account=None).owner_id)

    def test_str_representations(self):
        """Test str representations"""
        user = UserFactory(name='Ada', email='ada@example.com')
        rule = RuleFactory(rule_group=RuleGroupFactory(user=user), name='Coffee')
        condition = RuleCondition(field='description', operator='contains', value='coffee', is_negated=True)

        self.assertEqual(str(user), 'Ada <ada@example.com>')
        self.assertEqual(str(rule), 'Coffee (manual)')
        self.assertEqual(str(condition), "NOT description contains 'coffee'")
