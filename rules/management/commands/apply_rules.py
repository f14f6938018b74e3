from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone
from django.utils.dateparse import parse_date

from rules.enums import TriggerType
from rules.services import RuleService
from transactions.models import Transaction, User


class Command(BaseCommand):
    help = 'Apply a user\'s rules to transactions'

    def add_arguments(self, parser):
        parser.add_argument(
            'user_email',
            type=str,
            help='Email of the user whose rules to apply'
        )

        parser.add_argument(
            '--transaction-ids',
            nargs='+',
            type=int,
            help='Specific transaction IDs to process'
        )

        parser.add_argument(
            '--rule-ids',
            nargs='+',
            type=int,
            help='Run only these rules'
        )

        parser.add_argument(
            '--start',
            type=str,
            help='First booked date to process (YYYY-MM-DD)'
        )

        parser.add_argument(
            '--end',
            type=str,
            help='Last booked date to process (YYYY-MM-DD)'
        )

        parser.add_argument(
            '--all',
            action='store_true',
            help='Process every transaction of the user'
        )

        parser.add_argument(
            '--trigger',
            choices=TriggerType.values,
            default=TriggerType.MANUAL,
            help='Trigger whose rules run when no rule IDs are given (default: manual)'
        )

        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show what would change without saving anything'
        )

    def handle(self, *args, **options):
        try:
            user = User.objects.get(email=options['user_email'], is_active=True)
        except User.DoesNotExist:
            raise CommandError(f"User '{options['user_email']}' not found or inactive")

        transaction_ids = options.get('transaction_ids')
        rule_ids = options.get('rule_ids')
        dry_run = options.get('dry_run')
        start = self._parse_date(options.get('start'), '--start')
        end = self._parse_date(options.get('end'), '--end')

        if bool(start) != bool(end):
            raise CommandError("--start and --end must be given together")

        if options.get('all'):
            transaction_ids = list(
                Transaction.objects.filter(account__user=user).values_list('id', flat=True)
            )
            if not transaction_ids:
                self.stdout.write("No transactions found")
                return

        if not (transaction_ids or start or rule_ids):
            raise CommandError(
                "Please specify --transaction-ids, --start/--end, --rule-ids, or --all"
            )

        self.stdout.write(f"Applying rules for user: {user.email}")
        start_time = timezone.now()

        summary = RuleService().apply_rules(
            user,
            transaction_ids=transaction_ids,
            rule_ids=rule_ids,
            start=start,
            end=end,
            trigger_type=options['trigger'],
            dry_run=dry_run
        )

        for result in summary.transactions:
            if result.error:
                self.stdout.write(
                    self.style.ERROR(f"  Transaction {result.transaction_id}: ERROR - {result.error}")
                )
                continue

            matched = [outcome for outcome in result.rules if outcome.matched]
            if not matched:
                continue

            self.stdout.write(f"  Transaction {result.transaction_id}:")
            for outcome in matched:
                self.stdout.write(f"    Rule '{outcome.rule_name}' matched")
                for action in outcome.actions:
                    status = 'ok' if action.success else 'failed'
                    self.stdout.write(f"      {action.description} [{status}]")

        self.stdout.write(
            self.style.SUCCESS(
                f"Matched {summary.total_matched}/{summary.total_processed} transactions"
            )
        )
        if summary.failed:
            self.stdout.write(self.style.WARNING(f"{len(summary.failed)} transaction(s) failed"))

        elapsed_time = timezone.now() - start_time
        self.stdout.write(f"Completed in {elapsed_time.total_seconds():.2f} seconds")

        if dry_run:
            self.stdout.write("\n(Dry run - no changes saved)")

    def _parse_date(self, value, option):
        if not value:
            return None
        try:
            parsed = parse_date(value)
        except ValueError:
            parsed = None
        if parsed is None:
            raise CommandError(f"{option} must be a date in YYYY-MM-DD format, got '{value}'")
        return parsed
