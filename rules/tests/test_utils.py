import json

from django.test import TestCase

from rules.exceptions import RuleDefinitionError
from rules.models import Rule, RuleGroup
from rules.services import RuleService
from rules.tests.factories import UserFactory
from rules.utils import (
    export_rules_to_json, generate_sample_rules, import_rules_from_json, validate_rule_definition
)


class TestValidateRuleDefinition(TestCase):
    """Test rule definition validation in rules.utils"""

    def test_minimal_definition_is_valid(self):
        """Test minimal definition is valid"""
        self.assertTrue(validate_rule_definition({'name': 'Anything'}))

    def test_full_definition_is_valid(self):
        """Test full definition is valid"""
        definition = {
            'name': 'Groceries',
            'trigger_type': 'transaction_created',
            'stop_processing': True,
            'condition_groups': [
                {
                    'logic_operator': 'OR',
                    'conditions': [
                        {'field': 'description', 'operator': 'regex', 'value': '/lidl|billa/i'},
                        {'field': 'amount', 'operator': 'between', 'value': '-100,0'},
                        {'field': 'tags', 'operator': 'is_empty'},
                    ],
                },
            ],
            'actions': [
                {'action_type': 'set_category', 'value': 3},
                {'action_type': 'append_note', 'value': ' (auto)'},
                {'action_type': 'remove_all_tags'},
            ],
        }

        self.assertTrue(validate_rule_definition(definition))

    def test_missing_name(self):
        """Test missing name"""
        with self.assertRaises(RuleDefinitionError) as cm:
            validate_rule_definition({'actions': []})

        self.assertIn('name', str(cm.exception))

    def test_unknown_operator(self):
        """Test unknown operator"""
        with self.assertRaises(RuleDefinitionError) as cm:
            validate_rule_definition({
                'name': 'Bad',
                'condition_groups': [{'conditions': [
                    {'field': 'description', 'operator': 'sounds_like', 'value': 'x'},
                ]}],
            })

        self.assertIn('condition_groups.0.conditions.0.operator', str(cm.exception))

    def test_unknown_action_type(self):
        """Test unknown action type"""
        with self.assertRaises(RuleDefinitionError):
            validate_rule_definition({'name': 'Bad', 'actions': [{'action_type': 'teleport'}]})

    def test_ordering_operator_on_text_field(self):
        """Test ordering operator on text field"""
        with self.assertRaises(RuleDefinitionError) as cm:
            validate_rule_definition({
                'name': 'Bad',
                'condition_groups': [{'conditions': [
                    {'field': 'description', 'operator': 'greater_than', 'value': '5'},
                ]}],
            })

        self.assertEqual(len(cm.exception.errors), 1)

    def test_action_values_must_fit_their_family(self):
        """Test action values must fit their family"""
        with self.assertRaises(RuleDefinitionError) as cm:
            validate_rule_definition({
                'name': 'Bad',
                'actions': [
                    {'action_type': 'add_tag', 'value': 'Food'},
                    {'action_type': 'set_description', 'value': ''},
                    {'action_type': 'set_merchant', 'value': 0},
                ],
            })

        self.assertEqual(len(cm.exception.errors), 3)
        self.assertIn('actions.0', cm.exception.errors[0])

    def test_is_a_value_error(self):
        """Test is a value error"""
        with self.assertRaises(ValueError):
            validate_rule_definition({'name': ''})

    def test_sample_rules_are_valid(self):
        """Test sample rules are valid"""
        for definition in generate_sample_rules():
            with self.subTest(name=definition['name']):
                self.assertTrue(validate_rule_definition(definition))


class TestImportExport(TestCase):
    """Test rule export and import in rules.utils"""

    def setUp(self):
        self.user = UserFactory(email='owner@example.com')

    def test_export_rules_to_json(self):
        """Test export rules to json"""
        service = RuleService()
        group = service.create_rule_group(self.user, 'Everyday', order=2)
        service.create_rule(self.user, generate_sample_rules()[1], rule_group=group)

        data = json.loads(export_rules_to_json(self.user))

        self.assertEqual(data['user_email'], 'owner@example.com')
        self.assertEqual(len(data['rule_groups']), 1)
        exported_group = data['rule_groups'][0]
        self.assertEqual(exported_group['name'], 'Everyday')
        self.assertEqual(exported_group['order'], 2)
        rule = exported_group['rules'][0]
        self.assertEqual(rule['name'], 'Groceries')
        self.assertTrue(rule['stop_processing'])
        self.assertEqual(len(rule['condition_groups'][0]['conditions']), 3)

    def test_export_without_rules(self):
        """Test export without rules"""
        data = json.loads(export_rules_to_json(self.user))
        self.assertEqual(data['rule_groups'], [])

    def test_import_rules_from_json(self):
        """Test import rules from json"""
        payload = json.dumps({
            'rule_groups': [
                {'name': 'Imported', 'order': 1, 'rules': generate_sample_rules()},
            ],
        })

        results = import_rules_from_json(self.user, payload)

        self.assertEqual(results, {'imported': 3, 'errors': []})
        group = RuleGroup.objects.get(user=self.user, name='Imported')
        self.assertEqual(group.rules.count(), 3)

    def test_import_is_repeatable(self):
        """Test import is repeatable"""
        payload = json.dumps({'rule_groups': [{'name': 'Imported', 'rules': generate_sample_rules()}]})

        import_rules_from_json(self.user, payload)
        import_rules_from_json(self.user, payload)

        self.assertEqual(Rule.objects.filter(user=self.user).count(), 3)
        self.assertEqual(RuleGroup.objects.filter(user=self.user).count(), 1)

    def test_export_then_import_for_another_user(self):
        """Test export then import for another user"""
        RuleService().create_rule(self.user, generate_sample_rules()[2])
        other = UserFactory()

        results = import_rules_from_json(other, export_rules_to_json(self.user))

        self.assertEqual(results['imported'], 1)
        rule = Rule.objects.get(user=other)
        self.assertEqual(rule.name, 'Salary')
        self.assertEqual(rule.actions.count(), 3)

    def test_invalid_rules_are_reported_individually(self):
        """Test invalid rules are reported individually"""
        payload = json.dumps({'rule_groups': [{'name': 'Mixed', 'rules': [
            {'name': 'Good', 'actions': [{'action_type': 'set_note', 'value': 'ok'}]},
            {'name': 'Broken', 'actions': [{'action_type': 'set_category', 'value': 'food'}]},
        ]}]})

        results = import_rules_from_json(self.user, payload)

        self.assertEqual(results['imported'], 1)
        self.assertEqual(len(results['errors']), 1)
        self.assertIn("'Broken'", results['errors'][0])
        self.assertTrue(Rule.objects.filter(name='Good').exists())
        self.assertFalse(Rule.objects.filter(name='Broken').exists())

    def test_invalid_json(self):
        """Test invalid json"""
        results = import_rules_from_json(self.user, '{not json')
        self.assertIn('Invalid JSON', results['error'])

    def test_missing_rule_groups(self):
        """Test missing rule groups"""
        results = import_rules_from_json(self.user, json.dumps({'rules': []}))
        self.assertIn('rule_groups', results['error'])
