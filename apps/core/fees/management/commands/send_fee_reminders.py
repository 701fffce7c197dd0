from django.core.management.base import BaseCommand, CommandError
from django.utils.dateparse import parse_date

from apps.core.fees.reminders import REMINDER_DAYS, send_fee_reminders


class Command(BaseCommand):
    help = 'Emails families whose students have no payment recorded for the current month.'

    def add_arguments(self, parser):
        parser.add_argument('--day', type=int, required=True, choices=REMINDER_DAYS)
        parser.add_argument('--as-of', dest='as_of', help='Run as if today were this date (YYYY-MM-DD).')

    def handle(self, *args, **options):
        as_of = None
        if options.get('as_of'):
            as_of = parse_date(options['as_of'])
            if as_of is None:
                raise CommandError('--as-of must be a date in YYYY-MM-DD format.')

        summary = send_fee_reminders(reminder_day=options['day'], as_of=as_of)
        self.stdout.write(self.style.SUCCESS(
            f"Reminders sent: {summary['sent']}, failed: {summary['failed']}, skipped: {summary['skipped']}"
        ))
