from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase

from rules.actions import ActionExecutor
from rules.enums import ActionFamily, ActionType
from rules.models import RuleAction
from rules.signals import rule_notification
from rules.tests.factories import (
    AccountFactory, CategoryFactory, MerchantFactory, TagFactory, TransactionFactory, UserFactory
)
from transactions.models import Category, Merchant, Tag, Transaction


def action(action_type, value=None, **kwargs):
    instance = RuleAction(action_type=action_type, **kwargs)
    instance.set_value(value)
    return instance


class TestActionExecutor(TestCase):

    def setUp(self):
        self.executor = ActionExecutor()
        self.account = AccountFactory()
        self.user = self.account.user
        self.transaction = TransactionFactory(
            account=self.account,
            amount=Decimal('-12.50'),
            description='Pizza Market',
            note=None,
            type=Transaction.TYPE_CARD_PAYMENT,
        )

    # Id-based actions

    def test_set_category(self):
        """Test set category"""
        category = CategoryFactory(user=self.user, name='Restaurants')

        outcome = self.executor.run(action('set_category', category.id), self.transaction)

        self.assertTrue(outcome.success)
        self.assertEqual(self.transaction.category, category)
        self.assertEqual(outcome.changed_fields, ('category',))
        self.assertEqual(outcome.description, 'Set category to: Restaurants')

    def test_set_category_of_another_user_fails(self):
        """Test set category of another user fails"""
        foreign = CategoryFactory(user=UserFactory())

        self.assertFalse(self.executor.execute(action('set_category', foreign.id), self.transaction))
        self.assertIsNone(self.transaction.category_id)

    def test_set_missing_merchant_fails(self):
        """Test set missing merchant fails"""
        self.assertFalse(self.executor.execute(action('set_merchant', 99999), self.transaction))
        self.assertIsNone(self.transaction.merchant_id)

    def test_set_merchant(self):
        """Test set merchant"""
        merchant = MerchantFactory(user=self.user)
        self.assertTrue(self.executor.execute(action('set_merchant', str(merchant.id)), self.transaction))
        self.assertEqual(self.transaction.merchant, merchant)

    def test_add_tag_is_idempotent(self):
        """Test add tag is idempotent"""
        tag = TagFactory(user=self.user)

        self.assertTrue(self.executor.execute(action('add_tag', tag.id), self.transaction))
        self.assertTrue(self.executor.execute(action('add_tag', tag.id), self.transaction))

        self.assertEqual(list(self.transaction.tags.all()), [tag])

    def test_add_foreign_tag_fails(self):
        """Test add foreign tag fails"""
        tag = TagFactory(user=UserFactory())
        self.assertFalse(self.executor.execute(action('add_tag', tag.id), self.transaction))
        self.assertEqual(self.transaction.tags.count(), 0)

    def test_remove_tag(self):
        """Test remove tag"""
        kept, removed = TagFactory(user=self.user), TagFactory(user=self.user)
        self.transaction.tags.add(kept, removed)

        self.assertTrue(self.executor.execute(action('remove_tag', removed.id), self.transaction))
        self.assertTrue(self.executor.execute(action('remove_tag', removed.id), self.transaction))

        self.assertEqual(list(self.transaction.tags.all()), [kept])

    def test_remove_all_tags_always_succeeds(self):
        """Test remove all tags always succeeds"""
        self.assertTrue(self.executor.execute(action('remove_all_tags'), self.transaction))

        self.transaction.tags.add(TagFactory(user=self.user))
        self.assertTrue(self.executor.execute(action('remove_all_tags'), self.transaction))
        self.assertEqual(self.transaction.tags.count(), 0)

    # String actions

    def test_description_actions(self):
        """Test description actions"""
        self.executor.execute(action('append_description', ' Bratislava'), self.transaction)
        self.executor.execute(action('prepend_description', '[Food] '), self.transaction)
        self.assertEqual(self.transaction.description, '[Food] Pizza Market Bratislava')

        outcome = self.executor.run(action('set_description', 'Lunch'), self.transaction)
        self.assertEqual(self.transaction.description, 'Lunch')
        self.assertEqual(outcome.changed_fields, ('description',))

    def test_note_actions_handle_missing_note(self):
        """Test note actions handle missing note"""
        self.executor.execute(action('append_note', 'first'), self.transaction)
        self.assertEqual(self.transaction.note, 'first')

        self.executor.execute(action('set_note', 'second'), self.transaction)
        self.assertEqual(self.transaction.note, 'second')

    def test_set_type_normalises_case(self):
        """Test set type normalises case"""
        self.assertTrue(self.executor.execute(action('set_type', 'withdrawal'), self.transaction))
        self.assertEqual(self.transaction.type, Transaction.TYPE_WITHDRAWAL)

    def test_set_type_rejects_unknown_type(self):
        """Test set type rejects unknown type"""
        self.assertFalse(self.executor.execute(action('set_type', 'LOAN'), self.transaction))
        self.assertEqual(self.transaction.type, Transaction.TYPE_CARD_PAYMENT)

    # Find-or-create actions

    def test_create_category_if_not_exists(self):
        """Test create category if not exists"""
        self.assertTrue(self.executor.execute(action('create_category_if_not_exists', 'Food'), self.transaction))
        self.assertTrue(self.executor.execute(action('create_category_if_not_exists', 'Food'), self.transaction))

        category = Category.objects.get(user=self.user, name='Food')
        self.assertEqual(self.transaction.category, category)
        self.assertEqual(Category.objects.filter(name='Food').count(), 1)

    def test_create_merchant_reuses_existing(self):
        """Test create merchant reuses existing"""
        existing = MerchantFactory(user=self.user, name='Pizza Market')

        self.executor.execute(action('create_merchant_if_not_exists', 'Pizza Market'), self.transaction)

        self.assertEqual(self.transaction.merchant, existing)
        self.assertEqual(Merchant.objects.filter(user=self.user).count(), 1)

    def test_create_tag_is_scoped_to_owner(self):
        """Test create tag is scoped to owner"""
        other_user_tag = TagFactory(user=UserFactory(), name='Food')

        self.executor.execute(action('create_tag_if_not_exists', 'Food'), self.transaction)

        tag = self.transaction.tags.get()
        self.assertNotEqual(tag, other_user_tag)
        self.assertEqual(tag.user, self.user)
        self.assertEqual(Tag.objects.filter(name='Food').count(), 2)

    # Valueless actions

    def test_mark_reconciled(self):
        """Test mark reconciled"""
        outcome = self.executor.run(action('mark_reconciled'), self.transaction)

        self.assertTrue(outcome.success)
        self.assertTrue(self.transaction.is_reconciled)
        self.assertIsNotNone(self.transaction.reconciled_at)
        self.assertEqual(set(outcome.changed_fields), {'is_reconciled', 'reconciled_at'})

    def test_send_notification_emits_signal(self):
        """Test send notification emits signal"""
        received = []

        def receiver(**kwargs):
            received.append(kwargs)

        rule_notification.connect(receiver, weak=False)
        self.addCleanup(rule_notification.disconnect, receiver)

        self.assertTrue(self.executor.execute(action('send_notification', 'Big spend'), self.transaction))

        self.assertEqual(len(received), 1)
        self.assertEqual(received[0]['message'], 'Big spend')
        self.assertEqual(received[0]['transaction'], self.transaction)

    def test_failing_notification_receiver_is_contained(self):
        """Test failing notification receiver is contained"""
        def broken(**kwargs):
            raise RuntimeError('mail server down')

        rule_notification.connect(broken, weak=False)
        self.addCleanup(rule_notification.disconnect, broken)

        self.assertTrue(self.executor.execute(action('send_notification'), self.transaction))

    # Previews and failures

    def test_preview_does_not_mutate(self):
        """Test preview does not mutate"""
        category = CategoryFactory(user=self.user)

        self.assertTrue(self.executor.preview(action('set_category', category.id), self.transaction))
        self.assertTrue(self.executor.preview(action('create_tag_if_not_exists', 'New'), self.transaction))
        self.assertTrue(self.executor.preview(action('mark_reconciled'), self.transaction))

        self.assertIsNone(self.transaction.category_id)
        self.assertFalse(self.transaction.is_reconciled)
        self.assertFalse(Tag.objects.filter(name='New').exists())

    def test_preview_reports_failures_like_execute(self):
        """Test preview reports failures like execute"""
        self.assertFalse(self.executor.preview(action('set_category', 99999), self.transaction))
        self.assertFalse(self.executor.preview(action('set_type', 'LOAN'), self.transaction))

    def test_unknown_action_type_fails(self):
        """Test unknown action type fails"""
        unknown = RuleAction(action_type='teleport', value='x')
        self.assertFalse(self.executor.execute(unknown, self.transaction))

    def test_exceptions_are_caught(self):
        """Test exceptions are caught"""
        with patch.object(self.executor, '_detach_all_tags', side_effect=RuntimeError('database gone')):
            outcome = self.executor.run(action('remove_all_tags'), self.transaction)

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.description, 'Failed: Remove all tags')

    # Validation and descriptions

    def test_validate_action_value(self):
        """Test validate action value"""
        self.assertTrue(self.executor.validate_action_value('set_category', 5))
        self.assertTrue(self.executor.validate_action_value('add_tag', '12'))
        self.assertFalse(self.executor.validate_action_value('set_category', 0))
        self.assertFalse(self.executor.validate_action_value('set_category', 'food'))
        self.assertFalse(self.executor.validate_action_value('set_category', True))
        self.assertTrue(self.executor.validate_action_value('set_note', 'hello'))
        self.assertFalse(self.executor.validate_action_value('set_note', ''))
        self.assertFalse(self.executor.validate_action_value('set_note', 5))
        self.assertTrue(self.executor.validate_action_value('mark_reconciled', None))
        self.assertTrue(self.executor.validate_action_value('remove_all_tags', 'anything'))
        self.assertFalse(self.executor.validate_action_value('teleport', 'x'))

    def test_describe(self):
        """Test describe"""
        tag = TagFactory(user=self.user, name='Weekend')

        self.assertEqual(self.executor.describe(action('add_tag', tag.id)), 'Add tag: Weekend')
        self.assertEqual(self.executor.describe(action('remove_all_tags')), 'Remove all tags')
        self.assertEqual(self.executor.describe(action('set_note', 'Hi')), 'Set note to: Hi')
        self.assertEqual(self.executor.describe(action('mark_reconciled')), 'Mark as reconciled')
        self.assertEqual(self.executor.describe(action('set_category', 424242)), 'Set category to: Category #424242')

    def test_every_action_type_has_a_description(self):
        """Test every action type has a description"""
        for action_type in ActionType:
            with self.subTest(action_type=action_type):
                value = 1 if action_type.family is ActionFamily.ID_BASED else 'Value'
                self.assertNotEqual(self.executor.describe(action(action_type, value)), 'Unknown action')
