import json
from pathlib import Path

from django.core.management.base import BaseCommand, CommandError

from rules.models import Rule
from rules.utils import export_rules_to_json, generate_sample_rules, import_rules_from_json
from transactions.models import User


class Command(BaseCommand):
    help = 'Import rules from a JSON file, or export or generate one'

    def add_arguments(self, parser):
        parser.add_argument(
            'user_email',
            type=str,
            help='Email of the user owning the rules'
        )

        parser.add_argument(
            'file_path',
            type=str,
            help='Path to JSON file containing rules'
        )

        parser.add_argument(
            '--create-user',
            action='store_true',
            help='Create the user if it does not exist'
        )

        mode = parser.add_mutually_exclusive_group()
        mode.add_argument(
            '--generate-sample',
            action='store_true',
            help='Write a sample rules file instead of importing'
        )
        mode.add_argument(
            '--export',
            action='store_true',
            help='Write the user\'s current rules to the file instead of importing'
        )

    def handle(self, *args, **options):
        email = options['user_email']
        file_path = options['file_path']

        if options.get('generate_sample'):
            sample_rules = {
                'user_email': email,
                'rule_groups': [
                    {'name': 'Sample rules', 'order': 0, 'is_active': True, 'rules': generate_sample_rules()},
                ],
            }
            try:
                Path(file_path).write_text(json.dumps(sample_rules, indent=2))
            except OSError as e:
                raise CommandError(f"Error creating sample file: {str(e)}")

            self.stdout.write(self.style.SUCCESS(f"Sample rules file created at: {file_path}"))
            self.stdout.write("\nSample contains:")
            for rule in sample_rules['rule_groups'][0]['rules']:
                self.stdout.write(f"  - {rule['name']} ({rule['trigger_type']})")
            return

        user = self._get_user(email, options.get('create_user'))

        if options.get('export'):
            try:
                Path(file_path).write_text(export_rules_to_json(user))
            except OSError as e:
                raise CommandError(f"Error writing file: {str(e)}")
            self.stdout.write(self.style.SUCCESS(f"Rules exported to: {file_path}"))
            return

        if not Path(file_path).exists():
            raise CommandError(f"File not found: {file_path}")

        try:
            json_data = Path(file_path).read_text()
        except OSError as e:
            raise CommandError(f"Error reading file: {str(e)}")

        self.stdout.write(f"Importing rules for user: {user.email}")

        results = import_rules_from_json(user, json_data)

        if 'error' in results:
            raise CommandError(results['error'])

        self.stdout.write(
            self.style.SUCCESS(f"Successfully imported {results['imported']} rules")
        )

        if results.get('errors'):
            self.stdout.write(self.style.WARNING("\nErrors encountered:"))
            for error in results['errors']:
                self.stdout.write(f"  - {error}")

        total_rules = Rule.objects.filter(user=user).count()
        active_rules = Rule.objects.filter(user=user, is_active=True).count()

        self.stdout.write(f"\nUser '{user.email}' now has:")
        self.stdout.write(f"  Total rules: {total_rules}")
        self.stdout.write(f"  Active rules: {active_rules}")

    def _get_user(self, email, create):
        if create:
            user, created = User.objects.get_or_create(
                email=email,
                defaults={'name': email.split('@')[0]}
            )
            if created:
                self.stdout.write(self.style.SUCCESS(f"Created user: {email}"))
            return user

        try:
            return User.objects.get(email=email)
        except User.DoesNotExist:
            raise CommandError(f"User '{email}' not found")
